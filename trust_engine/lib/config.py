"""
Runtime configuration for the Trust & Compliance Engine.

All settings come from ``TRUST_*`` environment variables and are collected
into one frozen ComplianceSettings object. It is built once at startup and
passed to the services that need it.

Environment variables:
    TRUST_DATABASE_URL          SQLAlchemy async URL (default: local SQLite file)
    TRUST_ENVIRONMENT           development | staging | production
    TRUST_DEV_MODE              "1" enables dev master key + console logs
    TRUST_EXPORT_DIR            Directory for GDPR export artifacts
    TRUST_EXPORT_URL_PREFIX     Download path prefix recorded on requests
    TRUST_EXPORT_TTL_DAYS       Artifact lifetime (default 30)
    TRUST_AUDIT_RETENTION_DAYS  Audit log age-based cleanup (default 365)
    TRUST_CONSENT_VERSION       Current consent policy version (default 1.0.0)
    TRUST_AUDIT_QUEUE_SIZE      Bounded audit dispatcher queue (default 1000)
    TRUST_SWEEP_HOUR / _MINUTE  Daily retention sweep time, UTC (default 02:00)
    TRUST_RISK_LOW / _MEDIUM / _HIGH / _CRITICAL   Risk thresholds

Usage:
    from trust_engine.lib.config import get_settings

    settings = get_settings()
    settings.risk_thresholds.critical  # 95.0
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache

from trust_engine.lib.exceptions import ConfigurationError

# =============================================================================
# Risk Configuration
# =============================================================================


@dataclass(frozen=True)
class RiskThresholds:
    """Score cut-offs used by the risk engine.

    Attributes:
        low: Informational level.
        medium: Ratio heuristics (sessions, audio) trip above this.
        high: API heuristic trips above this; patterns above it are flagged.
        critical: Users whose 7-day mean exceeds this are blocked.
    """

    low: float = 30.0
    medium: float = 60.0
    high: float = 80.0
    critical: float = 95.0


@dataclass(frozen=True)
class TierLimits:
    """Per-tier usage ceilings."""

    sessions_per_day: int
    audio_minutes_per_day: int
    api_calls_per_hour: int


DEFAULT_TIER_LIMITS: dict[str, TierLimits] = {
    "free": TierLimits(sessions_per_day=5, audio_minutes_per_day=60, api_calls_per_hour=100),
    "pro": TierLimits(sessions_per_day=50, audio_minutes_per_day=600, api_calls_per_hour=1000),
    "enterprise": TierLimits(
        sessions_per_day=500, audio_minutes_per_day=6000, api_calls_per_hour=10000
    ),
}


# =============================================================================
# Settings
# =============================================================================


def _env_int(name: str, default: int, minimum: int | None = None) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


@dataclass(frozen=True)
class ComplianceSettings:
    """Immutable settings snapshot for one process."""

    database_url: str = "sqlite+aiosqlite:///./trust_engine.db"
    environment: str = "development"
    dev_mode: bool = False
    export_dir: str = "./data-exports"
    export_url_prefix: str = "/api/gdpr/download/"
    export_ttl_days: int = 30
    audit_retention_days: int = 365
    consent_policy_version: str = "1.0.0"
    audit_queue_size: int = 1000
    sweep_hour: int = 2
    sweep_minute: int = 0
    risk_thresholds: RiskThresholds = field(default_factory=RiskThresholds)
    tier_limits: dict[str, TierLimits] = field(default_factory=lambda: dict(DEFAULT_TIER_LIMITS))

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> ComplianceSettings:
        """Build settings from ``TRUST_*`` environment variables.

        Raises:
            ConfigurationError: If a variable is present but malformed
        """
        thresholds = RiskThresholds(
            low=_env_float("TRUST_RISK_LOW", 30.0),
            medium=_env_float("TRUST_RISK_MEDIUM", 60.0),
            high=_env_float("TRUST_RISK_HIGH", 80.0),
            critical=_env_float("TRUST_RISK_CRITICAL", 95.0),
        )
        if not thresholds.low <= thresholds.medium <= thresholds.high <= thresholds.critical:
            raise ConfigurationError("Risk thresholds must be ordered low <= medium <= high <= critical")

        sweep_hour = _env_int("TRUST_SWEEP_HOUR", 2, minimum=0)
        sweep_minute = _env_int("TRUST_SWEEP_MINUTE", 0, minimum=0)
        if sweep_hour > 23 or sweep_minute > 59:
            raise ConfigurationError("TRUST_SWEEP_HOUR/TRUST_SWEEP_MINUTE out of range")

        return cls(
            database_url=os.environ.get(
                "TRUST_DATABASE_URL", "sqlite+aiosqlite:///./trust_engine.db"
            ),
            environment=os.environ.get("TRUST_ENVIRONMENT", "development").lower(),
            dev_mode=os.environ.get("TRUST_DEV_MODE") == "1",
            export_dir=os.environ.get("TRUST_EXPORT_DIR", "./data-exports"),
            export_url_prefix=os.environ.get("TRUST_EXPORT_URL_PREFIX", "/api/gdpr/download/"),
            export_ttl_days=_env_int("TRUST_EXPORT_TTL_DAYS", 30, minimum=1),
            audit_retention_days=_env_int("TRUST_AUDIT_RETENTION_DAYS", 365, minimum=1),
            consent_policy_version=os.environ.get("TRUST_CONSENT_VERSION", "1.0.0"),
            audit_queue_size=_env_int("TRUST_AUDIT_QUEUE_SIZE", 1000, minimum=1),
            sweep_hour=sweep_hour,
            sweep_minute=sweep_minute,
            risk_thresholds=thresholds,
        )


@lru_cache(maxsize=1)
def get_settings() -> ComplianceSettings:
    """Return the process-wide settings, read from the environment once."""
    return ComplianceSettings.from_env()
