"""
CertKit Configuration

Reads environment variables once at process start and freezes them into a
``Settings`` value that is passed explicitly to the signature engine,
artifact store and batch coordinator.

Environment variables:
    CERT_SIGNING_KEYS        keyid:secret pairs, comma separated ("v1:abc,v2:def")
    APP_SIGNATURE_SECRET     single secret, bound to CERT_SIGNING_KEY_ID
    CERT_SIGNING_KEY_ID      id of the key used for new signatures (default: v1)
    CERT_STORAGE_PATH        artifact storage root (default: ./certificates)
    CERT_VERIFY_BASE_URL     base URL embedded in QR payloads
    CERT_BATCH_MAX_WORKERS   batch worker pool size (default: 50)
    CERT_BATCH_TIMEOUT_S     optional batch timeout in seconds
    CERT_QR_SIZE             QR image size in pixels (default: 200)
    CERT_ORPHAN_GRACE_HOURS  age before an unreferenced artifact is removed (default: 24)
    LOG_LEVEL / LOG_FORMAT   logging configuration

Example usage:
    from core.config import load_settings

    settings = load_settings()
    print(settings.current_key_id, settings.storage_path)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from core.errors import ConfigurationError
from core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_KEY_ID = "v1"
DEFAULT_STORAGE_PATH = "./certificates"
DEFAULT_VERIFY_BASE_URL = "http://localhost:4200"
DEFAULT_BATCH_MAX_WORKERS = 50
DEFAULT_QR_SIZE = 200
DEFAULT_ORPHAN_GRACE_HOURS = 24


@dataclass(frozen=True)
class Settings:
    """Immutable process configuration."""

    signing_keys: Mapping[str, bytes] = field(repr=False)
    current_key_id: str = DEFAULT_KEY_ID
    storage_path: Path = Path(DEFAULT_STORAGE_PATH)
    verify_base_url: str = DEFAULT_VERIFY_BASE_URL
    batch_max_workers: int = DEFAULT_BATCH_MAX_WORKERS
    batch_timeout_s: Optional[float] = None
    qr_size: int = DEFAULT_QR_SIZE
    orphan_grace_hours: int = DEFAULT_ORPHAN_GRACE_HOURS
    log_level: str = "INFO"
    log_format: str = "json"


def parse_signing_keys(raw: str) -> Dict[str, bytes]:
    """
    Parse ``keyid:secret`` pairs separated by commas.

    Secrets may themselves contain ``:``; only the first colon splits.

    Raises:
        ConfigurationError: If an entry is malformed or a key id repeats
    """
    keys: Dict[str, bytes] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        key_id, sep, secret = entry.partition(":")
        key_id = key_id.strip()
        if not sep or not key_id or not secret:
            raise ConfigurationError(
                "Malformed CERT_SIGNING_KEYS entry; expected keyid:secret",
                details={"key_id": key_id or None},
            )
        if key_id in keys:
            raise ConfigurationError(f"Duplicate signing key id: {key_id}")
        keys[key_id] = secret.encode("utf-8")
    return keys


def _int_from_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {name} value, using default {default}")
        return default
    if value < 1:
        logger.warning(f"Invalid {name} value, using default {default}")
        return default
    return value


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build ``Settings`` from environment variables.

    Args:
        environ: Mapping to read from (defaults to ``os.environ``)

    Returns:
        Frozen settings

    Raises:
        ConfigurationError: If no signing key material is configured or the
            current key id is not among the configured keys
    """
    if environ is None:
        environ = os.environ

    current_key_id = environ.get("CERT_SIGNING_KEY_ID", DEFAULT_KEY_ID).strip() or DEFAULT_KEY_ID

    signing_keys = parse_signing_keys(environ.get("CERT_SIGNING_KEYS", ""))
    single_secret = environ.get("APP_SIGNATURE_SECRET")
    if single_secret and current_key_id not in signing_keys:
        signing_keys[current_key_id] = single_secret.encode("utf-8")

    if not signing_keys:
        raise ConfigurationError("No signing key configured; set CERT_SIGNING_KEYS or APP_SIGNATURE_SECRET")
    if current_key_id not in signing_keys:
        raise ConfigurationError(
            f"Current signing key id '{current_key_id}' is not configured",
            details={"configured": sorted(signing_keys)},
        )

    timeout_raw = environ.get("CERT_BATCH_TIMEOUT_S")
    batch_timeout_s: Optional[float] = None
    if timeout_raw:
        try:
            batch_timeout_s = float(timeout_raw)
        except ValueError:
            logger.warning("Invalid CERT_BATCH_TIMEOUT_S value, batches will not time out")

    return Settings(
        signing_keys=MappingProxyType(dict(signing_keys)),
        current_key_id=current_key_id,
        storage_path=Path(environ.get("CERT_STORAGE_PATH", DEFAULT_STORAGE_PATH)),
        verify_base_url=environ.get("CERT_VERIFY_BASE_URL", DEFAULT_VERIFY_BASE_URL),
        batch_max_workers=_int_from_env(environ, "CERT_BATCH_MAX_WORKERS", DEFAULT_BATCH_MAX_WORKERS),
        batch_timeout_s=batch_timeout_s,
        qr_size=_int_from_env(environ, "CERT_QR_SIZE", DEFAULT_QR_SIZE),
        orphan_grace_hours=_int_from_env(environ, "CERT_ORPHAN_GRACE_HOURS", DEFAULT_ORPHAN_GRACE_HOURS),
        log_level=environ.get("LOG_LEVEL", "INFO"),
        log_format=environ.get("LOG_FORMAT", "json"),
    )
