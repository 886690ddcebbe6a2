"""
Tests for canonical payloads, the keyring and HMAC signing/verification.

Example usage:
    pytest tests/test_signature.py -v
"""

import base64
import hashlib
import hmac

import pytest

from core.errors import CanonicalizationError, SigningFailure, UnknownKeyError
from core.signature import Keyring, SignatureEngine, canonical_json, canonical_payload

SECRET = b"test-signing-secret"


class TestCanonicalJson:
    """Deterministic data serialization."""

    def test_keys_sorted_without_whitespace(self):
        assert canonical_json({"b": "2", "a": "1"}) == '{"a":"1","b":"2"}'

    def test_insertion_order_does_not_matter(self):
        assert canonical_json({"x": "1", "y": "2"}) == canonical_json({"y": "2", "x": "1"})

    def test_none_and_empty_are_empty_object(self):
        assert canonical_json(None) == "{}"
        assert canonical_json({}) == "{}"

    def test_null_values_are_kept(self):
        assert canonical_json({"a": None}) == '{"a":null}'

    def test_non_ascii_is_not_escaped(self):
        assert canonical_json({"name": "Zoë"}) == '{"name":"Zoë"}'

    def test_unicode_forms_are_kept_distinct(self):
        decomposed = "Jose\u0301"
        composed = "Jos\u00e9"
        assert canonical_json({"name": decomposed}) != canonical_json({"name": composed})
        assert canonical_json({composed: "one", decomposed: "two"}) == (
            '{"' + decomposed + '":"two","' + composed + '":"one"}'
        )

    def test_lone_surrogate_rejected(self):
        with pytest.raises(CanonicalizationError):
            canonical_payload("abc-123", {"name": "\ud800"})

    def test_non_string_value_rejected(self):
        with pytest.raises(CanonicalizationError):
            canonical_json({"count": 3})

    def test_non_string_key_rejected(self):
        with pytest.raises(CanonicalizationError):
            canonical_json({1: "x"})

    def test_payload_format(self):
        assert canonical_payload("abc", {"k": "v"}) == b'abc:{"k":"v"}'


class TestKeyring:
    """Key material resolution."""

    def test_resolves_configured_keys(self):
        ring = Keyring({"v1": b"one", "v2": b"two"}, current_key_id="v2")
        assert ring.current_key_id == "v2"
        assert ring.resolve("v1") == b"one"
        assert ring.key_ids == ["v1", "v2"]

    def test_unknown_key_raises(self):
        ring = Keyring({"v1": b"one"}, current_key_id="v1")
        with pytest.raises(UnknownKeyError):
            ring.resolve("v9")

    def test_empty_keyring_rejected(self):
        with pytest.raises(SigningFailure):
            Keyring({}, current_key_id="v1")

    def test_empty_secret_rejected(self):
        with pytest.raises(SigningFailure):
            Keyring({"v1": b""}, current_key_id="v1")

    def test_current_key_must_exist(self):
        with pytest.raises(SigningFailure):
            Keyring({"v1": b"one"}, current_key_id="v2")

    def test_repr_does_not_leak_secrets(self):
        ring = Keyring({"v1": b"super-secret"}, current_key_id="v1")
        assert "super-secret" not in repr(ring)


class TestSignatureEngine:
    """Signing and verification."""

    def test_signature_matches_hmac_sha256(self, engine):
        expected = base64.urlsafe_b64encode(
            hmac.new(SECRET, b'id-1:{"name":"Alice"}', hashlib.sha256).digest()
        ).decode("ascii").rstrip("=")
        assert engine.sign("id-1", {"name": "Alice"}) == expected

    def test_signature_is_url_safe_without_padding(self, engine):
        signature = engine.sign("id-1", {"name": "Alice"})
        assert "=" not in signature
        assert "+" not in signature and "/" not in signature
        assert len(signature) == 43

    def test_sign_is_deterministic(self, engine):
        assert engine.sign("id-1", {"a": "1", "b": "2"}) == engine.sign("id-1", {"b": "2", "a": "1"})

    def test_verify_round_trip(self, engine):
        signature = engine.sign("id-1", {"name": "Alice"})
        assert engine.verify("id-1", {"name": "Alice"}, "v1", signature) is True

    def test_modified_id_fails(self, engine):
        signature = engine.sign("id-1", {"name": "Alice"})
        assert engine.verify("id-2", {"name": "Alice"}, "v1", signature) is False

    def test_modified_value_fails(self, engine):
        signature = engine.sign("id-1", {"name": "Alice"})
        assert engine.verify("id-1", {"name": "Alicf"}, "v1", signature) is False

    def test_extra_key_fails(self, engine):
        signature = engine.sign("id-1", {"name": "Alice"})
        assert engine.verify("id-1", {"name": "Alice", "x": "y"}, "v1", signature) is False

    def test_modified_signature_fails(self, engine):
        signature = engine.sign("id-1", {"name": "Alice"})
        tampered = ("A" if signature[0] != "A" else "B") + signature[1:]
        assert engine.verify("id-1", {"name": "Alice"}, "v1", tampered) is False

    @pytest.mark.parametrize("signature", ["", "not base64 at all", "ü-non-ascii", None])
    def test_malformed_signature_is_false(self, engine, signature):
        assert engine.verify("id-1", {"name": "Alice"}, "v1", signature) is False

    def test_unknown_key_id_is_false(self, engine):
        signature = engine.sign("id-1", {"name": "Alice"})
        assert engine.verify("id-1", {"name": "Alice"}, "v9", signature) is False

    def test_uncanonicalizable_data_is_false(self, engine):
        signature = engine.sign("id-1", {"name": "Alice"})
        assert engine.verify("id-1", {"name": 5}, "v1", signature) is False

    def test_lone_surrogate_is_false(self, engine):
        assert engine.verify("id-1", {"name": "\ud800"}, "v1", "sig") is False
        assert engine.verify("id-\ud800", {"name": "Alice"}, "v1", "sig") is False

    def test_unicode_normal_forms_are_distinct(self, engine):
        signature = engine.sign("abc-123", {"name": "Jose\u0301"})
        assert engine.verify("abc-123", {"name": "Jos\u00e9"}, "v1", signature) is False

    def test_sign_with_unknown_key_raises(self, engine):
        with pytest.raises(UnknownKeyError):
            engine.sign("id-1", {"name": "Alice"}, key_id="nope")


class TestKeyRotation:
    """Signatures made with a retired key stay verifiable."""

    def test_old_signature_verifies_after_rotation(self):
        before = SignatureEngine(Keyring({"v1": b"one"}, current_key_id="v1"))
        signature = before.sign("id-1", {"name": "Alice"})

        after = SignatureEngine(Keyring({"v1": b"one", "v2": b"two"}, current_key_id="v2"))
        assert after.current_key_id() == "v2"
        assert after.verify("id-1", {"name": "Alice"}, "v1", signature) is True
        assert after.verify("id-1", {"name": "Alice"}, "v2", signature) is False

    def test_new_signatures_use_current_key(self):
        engine = SignatureEngine(Keyring({"v1": b"one", "v2": b"two"}, current_key_id="v2"))
        assert engine.sign("id-1", {}) == engine.sign("id-1", {}, key_id="v2")
        assert engine.sign("id-1", {}) != engine.sign("id-1", {}, key_id="v1")

    def test_removed_key_no_longer_verifies(self):
        signature = SignatureEngine(Keyring({"v1": b"one"}, "v1")).sign("id-1", {})
        engine = SignatureEngine(Keyring({"v2": b"two"}, "v2"))
        assert engine.verify("id-1", {}, "v1", signature) is False
