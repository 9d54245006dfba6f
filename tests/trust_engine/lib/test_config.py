"""
Tests for ComplianceSettings (trust_engine/lib/config.py).
"""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from trust_engine.lib.config import (
    DEFAULT_TIER_LIMITS,
    ComplianceSettings,
    RiskThresholds,
)
from trust_engine.lib.exceptions import ConfigurationError


def _env(**values: str) -> dict[str, str]:
    """Environment with every TRUST_* variable removed, plus ``values``."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("TRUST_")}
    env.update(values)
    return env


class TestDefaults:
    """Defaults without any TRUST_* variables."""

    def test_defaults(self) -> None:
        with patch.dict(os.environ, _env(), clear=True):
            settings = ComplianceSettings.from_env()

        assert settings.environment == "development"
        assert settings.dev_mode is False
        assert settings.export_ttl_days == 30
        assert settings.audit_retention_days == 365
        assert settings.consent_policy_version == "1.0.0"
        assert (settings.sweep_hour, settings.sweep_minute) == (2, 0)
        assert settings.risk_thresholds == RiskThresholds()
        assert settings.tier_limits == DEFAULT_TIER_LIMITS

    def test_default_thresholds(self) -> None:
        t = RiskThresholds()
        assert (t.low, t.medium, t.high, t.critical) == (30.0, 60.0, 80.0, 95.0)

    def test_default_tier_limits(self) -> None:
        free = DEFAULT_TIER_LIMITS["free"]
        assert (free.sessions_per_day, free.audio_minutes_per_day, free.api_calls_per_hour) == (
            5,
            60,
            100,
        )
        assert DEFAULT_TIER_LIMITS["enterprise"].api_calls_per_hour == 10000

    def test_settings_are_frozen(self) -> None:
        settings = ComplianceSettings()
        with pytest.raises(AttributeError):
            settings.environment = "production"  # type: ignore[misc]


class TestFromEnv:
    """Parsing and validation of TRUST_* variables."""

    def test_overrides(self) -> None:
        env = _env(
            TRUST_ENVIRONMENT="Production",
            TRUST_DEV_MODE="1",
            TRUST_EXPORT_TTL_DAYS="7",
            TRUST_RISK_CRITICAL="90",
            TRUST_SWEEP_HOUR="3",
            TRUST_SWEEP_MINUTE="15",
        )
        with patch.dict(os.environ, env, clear=True):
            settings = ComplianceSettings.from_env()

        assert settings.environment == "production"
        assert settings.is_production is True
        assert settings.dev_mode is True
        assert settings.export_ttl_days == 7
        assert settings.risk_thresholds.critical == 90.0
        assert (settings.sweep_hour, settings.sweep_minute) == (3, 15)

    def test_empty_value_uses_default(self) -> None:
        with patch.dict(os.environ, _env(TRUST_EXPORT_TTL_DAYS=""), clear=True):
            assert ComplianceSettings.from_env().export_ttl_days == 30

    @pytest.mark.parametrize(
        "env",
        [
            {"TRUST_EXPORT_TTL_DAYS": "thirty"},
            {"TRUST_EXPORT_TTL_DAYS": "0"},
            {"TRUST_AUDIT_QUEUE_SIZE": "-1"},
            {"TRUST_RISK_HIGH": "high"},
            {"TRUST_RISK_MEDIUM": "90"},
            {"TRUST_SWEEP_HOUR": "24"},
            {"TRUST_SWEEP_MINUTE": "60"},
        ],
    )
    def test_invalid_values_raise(self, env: dict[str, str]) -> None:
        with patch.dict(os.environ, _env(**env), clear=True):
            with pytest.raises(ConfigurationError):
                ComplianceSettings.from_env()
