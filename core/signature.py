"""
Certificate Signature Engine

Signs and verifies certificate data with HMAC-SHA256. The signed bytes are
the canonical payload ``<unique_id>:<canonical_json(data)>`` where the JSON
has sorted keys and no insignificant whitespace. Keys and values are
serialized exactly as given, so any change to a value changes the payload.

Signatures are tagged with the id of the key that produced them. The
keyring resolves any configured key id, not only the current one, so
certificates signed before a key rotation remain verifiable.

Example usage:
    from core.signature import Keyring, SignatureEngine

    engine = SignatureEngine(Keyring({"v1": b"secret"}, current_key_id="v1"))
    signature = engine.sign("abc-123", {"name": "Alice"})
    assert engine.verify("abc-123", {"name": "Alice"}, "v1", signature)
"""

import base64
import hashlib
import hmac
import json
from types import MappingProxyType
from typing import Mapping, Optional

from core.config import Settings
from core.errors import CanonicalizationError, SigningFailure, UnknownKeyError
from core.logging import get_logger

logger = get_logger(__name__)

PAYLOAD_SEPARATOR = ":"


def canonical_json(data: Optional[Mapping[str, Optional[str]]]) -> str:
    """
    Serialize a string-to-string map deterministically.

    Args:
        data: Data map; None is treated as an empty map

    Returns:
        Sorted-key compact JSON text

    Raises:
        CanonicalizationError: If a key is not a string or a value is neither
            a string nor None
    """
    if data is None:
        data = {}

    checked = {}
    for key, value in data.items():
        if not isinstance(key, str):
            raise CanonicalizationError("Certificate data keys must be strings", details={"key": repr(key)})
        if value is not None and not isinstance(value, str):
            raise CanonicalizationError(
                "Certificate data values must be strings",
                details={"key": key, "type": type(value).__name__},
            )
        checked[key] = value

    return json.dumps(checked, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def canonical_payload(unique_id: str, data: Optional[Mapping[str, Optional[str]]]) -> bytes:
    """
    Build the exact bytes that are signed for ``unique_id`` and ``data``.

    Raises:
        CanonicalizationError: If the text cannot be encoded as UTF-8 (lone surrogates)
    """
    try:
        return (unique_id + PAYLOAD_SEPARATOR + canonical_json(data)).encode("utf-8")
    except UnicodeEncodeError as e:
        raise CanonicalizationError("Certificate data is not valid Unicode text", details={"reason": e.reason})


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


class Keyring:
    """
    Immutable set of HMAC secrets keyed by key id.

    Args:
        keys: Mapping of key id to secret bytes
        current_key_id: Key used for new signatures
    """

    def __init__(self, keys: Mapping[str, bytes], current_key_id: str):
        if not keys:
            raise SigningFailure("Keyring requires at least one signing key")
        for key_id, secret in keys.items():
            if not isinstance(secret, (bytes, bytearray)) or not secret:
                raise SigningFailure(f"Signing key '{key_id}' has no usable secret material")
        if current_key_id not in keys:
            raise SigningFailure(f"Current signing key id '{current_key_id}' is not in the keyring")

        self._keys = MappingProxyType({k: bytes(v) for k, v in keys.items()})
        self._current_key_id = current_key_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "Keyring":
        return cls(settings.signing_keys, settings.current_key_id)

    @property
    def current_key_id(self) -> str:
        return self._current_key_id

    @property
    def key_ids(self) -> list:
        return sorted(self._keys)

    def resolve(self, key_id: str) -> bytes:
        """
        Return the secret for ``key_id``.

        Raises:
            UnknownKeyError: If the key id is not configured
        """
        try:
            return self._keys[key_id]
        except KeyError:
            raise UnknownKeyError(f"Unknown signing key id: {key_id}", details={"key_id": key_id}) from None

    def __repr__(self) -> str:
        return f"Keyring(key_ids={self.key_ids!r}, current_key_id={self._current_key_id!r})"


class SignatureEngine:
    """HMAC-SHA256 signer/verifier over canonical certificate payloads."""

    def __init__(self, keyring: Keyring):
        self.keyring = keyring

    def current_key_id(self) -> str:
        return self.keyring.current_key_id

    def sign(
        self,
        unique_id: str,
        data: Optional[Mapping[str, Optional[str]]],
        key_id: Optional[str] = None
    ) -> str:
        """
        Sign ``(unique_id, data)`` with the key bound to ``key_id``.

        Args:
            unique_id: Certificate identifier
            data: Certificate data map
            key_id: Key to sign with (current key when omitted)

        Returns:
            URL-safe base64 HMAC-SHA256 without padding

        Raises:
            SigningFailure: If the key cannot be resolved or HMAC fails
            CanonicalizationError: If the data map is not string-to-string
        """
        key_id = key_id or self.keyring.current_key_id
        secret = self.keyring.resolve(key_id)
        payload = canonical_payload(unique_id, data)

        try:
            mac = hmac.new(secret, payload, hashlib.sha256).digest()
        except (TypeError, ValueError) as e:
            raise SigningFailure("Failed to compute HMAC signature", details={"key_id": key_id}) from e

        return _b64url(mac)

    def verify(
        self,
        unique_id: str,
        data: Optional[Mapping[str, Optional[str]]],
        key_id: str,
        signature: str
    ) -> bool:
        """
        Recompute the signature and compare in constant time.

        Never raises: an unknown key id, data that cannot be canonicalized or
        a malformed signature all verify as False.
        """
        if not isinstance(signature, str) or not signature:
            return False

        try:
            expected = self.sign(unique_id, data, key_id)
        except UnknownKeyError:
            logger.info("Signature verification against unknown key id", extra={"key_id": key_id})
            return False
        except (SigningFailure, CanonicalizationError) as e:
            logger.warning(
                "Signature verification could not recompute signature",
                extra={"key_id": key_id, "error": e.code},
            )
            return False

        try:
            provided = signature.encode("ascii")
        except UnicodeEncodeError:
            return False

        return hmac.compare_digest(expected.encode("ascii"), provided)


def engine_from_settings(settings: Settings) -> SignatureEngine:
    return SignatureEngine(Keyring.from_settings(settings))
