"""
Tests for security primitives (trust_engine/lib/security.py).

Tests:
- hash_uid / hash_ip
- Master key resolution order (env, keyring, dev key)
- Export file name sanitisation
"""

from __future__ import annotations

import base64
import os
from unittest.mock import patch

import keyring.errors
import pytest

from trust_engine.lib.config import ComplianceSettings
from trust_engine.lib.exceptions import ConfigurationError, ValidationError
from trust_engine.lib.security import (
    MASTER_KEY_SIZE,
    hash_ip,
    hash_uid,
    load_master_key,
    sanitize_file_name,
)

KEY = bytes(range(MASTER_KEY_SIZE))


def _env_without_master_key() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if k != "TRUST_MASTER_KEY"}


class TestHashing:
    def test_hash_uid_is_short_and_stable(self) -> None:
        assert len(hash_uid("user-1")) == 12
        assert hash_uid("user-1") == hash_uid("user-1")
        assert hash_uid("user-1") != hash_uid("user-2")

    def test_hash_uid_accepts_none(self) -> None:
        assert len(hash_uid(None)) == 12

    def test_hash_ip_depends_on_secret(self) -> None:
        a = hash_ip("203.0.113.7", b"secret-a")
        assert a == hash_ip("203.0.113.7", b"secret-a")
        assert a != hash_ip("203.0.113.7", b"secret-b")
        assert "203.0.113.7" not in a
        assert len(a) == 64


class TestLoadMasterKey:
    """Resolution order: env -> keyring -> dev key."""

    def test_env_key_wins(self) -> None:
        env = {**os.environ, "TRUST_MASTER_KEY": base64.b64encode(KEY).decode()}
        with patch.dict(os.environ, env, clear=True), patch(
            "trust_engine.lib.security.keyring.get_password"
        ) as get_password:
            assert load_master_key(ComplianceSettings()) == KEY
        get_password.assert_not_called()

    def test_env_key_wrong_length(self) -> None:
        env = {**os.environ, "TRUST_MASTER_KEY": base64.b64encode(b"short").decode()}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError):
                load_master_key(ComplianceSettings())

    def test_env_key_not_base64(self) -> None:
        env = {**os.environ, "TRUST_MASTER_KEY": "%%%not-base64%%%"}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError):
                load_master_key(ComplianceSettings())

    def test_keyring_fallback(self) -> None:
        with patch.dict(os.environ, _env_without_master_key(), clear=True), patch(
            "trust_engine.lib.security.keyring.get_password",
            return_value=base64.b64encode(KEY).decode(),
        ):
            assert load_master_key(ComplianceSettings()) == KEY

    def test_dev_key_in_dev_mode(self) -> None:
        with patch.dict(os.environ, _env_without_master_key(), clear=True), patch(
            "trust_engine.lib.security.keyring.get_password",
            side_effect=keyring.errors.KeyringError("no backend"),
        ):
            key = load_master_key(ComplianceSettings(dev_mode=True))
        assert len(key) == MASTER_KEY_SIZE

    def test_dev_key_refused_in_production(self) -> None:
        settings = ComplianceSettings(dev_mode=True, environment="production")
        with patch.dict(os.environ, _env_without_master_key(), clear=True), patch(
            "trust_engine.lib.security.keyring.get_password", return_value=None
        ):
            with pytest.raises(ConfigurationError):
                load_master_key(settings)

    def test_no_key_configured(self) -> None:
        with patch.dict(os.environ, _env_without_master_key(), clear=True), patch(
            "trust_engine.lib.security.keyring.get_password", return_value=None
        ):
            with pytest.raises(ConfigurationError):
                load_master_key(ComplianceSettings(dev_mode=False))


class TestSanitizeFileName:
    def test_plain_name_accepted(self) -> None:
        name = "user-data-export-user-1-1767225600000.json"
        assert sanitize_file_name(name) == name

    @pytest.mark.parametrize(
        "name",
        ["", "../etc/passwd", "exports/a.json", ".hidden", "a..b.json", "a\\b.json", "a b.json"],
    )
    def test_unsafe_names_rejected(self, name: str) -> None:
        with pytest.raises(ValidationError):
            sanitize_file_name(name)
