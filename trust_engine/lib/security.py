"""
Security primitives shared across the Trust & Compliance Engine.

Components:
- hash_uid: log-safe user identifiers for operational logs
- hash_ip: HMAC-SHA256 of client IPs for consent records (raw IPs are not stored there)
- load_master_key: resolves the process-wide master secret (env -> keyring -> dev key)
- sanitize_file_name: rejects anything that is not a plain artifact file name

Usage:
    from trust_engine.lib.security import hash_uid, load_master_key

    logger.info("key_generated", user_hash=hash_uid(user_id))
    master = load_master_key(settings)
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import re

import keyring
import keyring.errors
import structlog

from trust_engine.lib.config import ComplianceSettings
from trust_engine.lib.exceptions import ConfigurationError, ValidationError

logger = structlog.get_logger()

MASTER_KEY_SIZE = 32
KEYRING_SERVICE = "trust-engine"
KEYRING_MASTER_KEY = "master_key"

# Deterministic dev key, only ever used when dev mode is on outside production.
_DEV_MASTER_KEY = hashlib.sha256(b"trust-engine-dev-master-key").digest()

_FILE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,254}$")


def hash_uid(user_id: str | None) -> str:
    """Return a 12-char SHA-256 prefix for log-safe user identification."""
    return hashlib.sha256(str(user_id).encode()).hexdigest()[:12]


def hash_ip(ip_address: str, secret: bytes) -> str:
    """
    Hash an IP address using HMAC-SHA256.

    Args:
        ip_address: Raw IP address string
        secret: HMAC key (derived from the master secret)

    Returns:
        Hex-encoded HMAC-SHA256 digest
    """
    return hmac.new(secret, ip_address.encode("utf-8"), hashlib.sha256).hexdigest()


def _decode_master_key(raw: str, source: str) -> bytes:
    try:
        key = base64.b64decode(raw, validate=True)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Master key from {source} is not valid base64") from e
    if len(key) != MASTER_KEY_SIZE:
        raise ConfigurationError(
            f"Master key from {source} must be {MASTER_KEY_SIZE} bytes, got {len(key)}"
        )
    return key


def load_master_key(settings: ComplianceSettings) -> bytes:
    """
    Load the process-wide master secret.

    Resolution order:
        1. TRUST_MASTER_KEY environment variable (base64, 32 bytes)
        2. OS keyring entry ``trust-engine/master_key``
        3. Deterministic dev key, only in dev mode outside production

    Raises:
        ConfigurationError: If no usable master key is available
    """
    env_key = os.environ.get("TRUST_MASTER_KEY")
    if env_key:
        return _decode_master_key(env_key, "TRUST_MASTER_KEY")

    try:
        stored = keyring.get_password(KEYRING_SERVICE, KEYRING_MASTER_KEY)
    except keyring.errors.KeyringError as e:
        logger.warning("keyring_unavailable", error=str(e))
        stored = None
    if stored:
        return _decode_master_key(stored, "keyring")

    if settings.dev_mode and not settings.is_production:
        logger.warning("dev_master_key_in_use")
        return _DEV_MASTER_KEY

    raise ConfigurationError(
        "No master key configured. Set TRUST_MASTER_KEY or store one in the OS keyring."
    )


def sanitize_file_name(file_name: str) -> str:
    """
    Validate an export artifact file name.

    Only plain names are accepted: no separators, no parent references,
    no leading dots.

    Raises:
        ValidationError: If the name could address anything outside the store
    """
    if not file_name or not _FILE_NAME_RE.match(file_name) or ".." in file_name:
        raise ValidationError(f"Invalid file name: {file_name!r}")
    return file_name
