"""
Per-user privacy preferences.

Each user has one PrivacySetting row, created with defaults the first time
it is read. Users can shorten the retention of their own audio and transcriptions
below the global policy (the global sweep still applies to them) and switch individual processing features off.

``validate_privacy_for_operation`` is the gate other services call before
analytics tracking, data sharing, session recording or AI training.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trust_engine.lib.exceptions import PrivacyDisabledError, StorageError, ValidationError
from trust_engine.lib.security import hash_uid
from trust_engine.models.audit import AuditAction
from trust_engine.models.retention import PrivacySetting
from trust_engine.services.audit_log import AuditLog

logger = structlog.get_logger(__name__)


class PrivacyOperation(StrEnum):
    """Operations gated by a privacy toggle."""

    ANALYTICS_TRACKING = "analytics_tracking"
    DATA_SHARING = "data_sharing"
    SESSION_RECORDING = "session_recording"
    AI_TRAINING = "ai_training"


# operation -> (setting attribute, message when disabled)
OPERATION_TOGGLES: dict[PrivacyOperation, tuple[str, str]] = {
    PrivacyOperation.ANALYTICS_TRACKING: ("allow_analytics", "Analytics tracking is disabled"),
    PrivacyOperation.DATA_SHARING: ("allow_data_sharing", "Data sharing is disabled"),
    PrivacyOperation.SESSION_RECORDING: ("session_recording", "Session recording is disabled"),
    PrivacyOperation.AI_TRAINING: ("ai_training_consent", "AI training consent not given"),
}


@dataclass(frozen=True)
class PrivacySettingsView:
    """Snapshot of one user's privacy settings."""

    audio_retention_days: int = 30
    transcription_retention_days: int = 90
    allow_analytics: bool = True
    allow_data_sharing: bool = False
    marketing_emails: bool = False
    session_recording: bool = True
    ai_training_consent: bool = False

    @classmethod
    def from_record(cls, record: PrivacySetting) -> PrivacySettingsView:
        return cls(**{f.name: getattr(record, f.name) for f in fields(cls)})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_PRIVACY_SETTINGS = PrivacySettingsView()

_RETENTION_FIELDS = ("audio_retention_days", "transcription_retention_days")
_SETTING_FIELDS = frozenset(f.name for f in fields(PrivacySettingsView))


@dataclass(frozen=True)
class PrivacySettingsUpdate:
    """Partial update; None means "leave unchanged"."""

    audio_retention_days: int | None = None
    transcription_retention_days: int | None = None
    allow_analytics: bool | None = None
    allow_data_sharing: bool | None = None
    marketing_emails: bool | None = None
    session_recording: bool | None = None
    ai_training_consent: bool | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PrivacySettingsUpdate:
        unknown = set(data) - _SETTING_FIELDS
        if unknown:
            raise ValidationError(f"Unknown privacy settings: {', '.join(sorted(unknown))}")
        return cls(**data)

    def changed_values(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class PrivacyPreferences:
    """Lazily-created per-user privacy settings with an operation gate."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit_log: AuditLog,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit_log

    async def find_user_privacy_settings(self, user_id: str) -> PrivacySettingsView | None:
        """Current settings, or None if the user never had any (nothing is created)."""
        async with self._session_factory() as session:
            record = await session.scalar(
                select(PrivacySetting).where(PrivacySetting.user_id == user_id)
            )
        return PrivacySettingsView.from_record(record) if record is not None else None

    async def get_user_privacy_settings(self, user_id: str) -> PrivacySettingsView:
        """Current settings, creating the defaults on first access."""
        existing = await self.find_user_privacy_settings(user_id)
        if existing is not None:
            return existing

        try:
            async with self._session_factory() as session, session.begin():
                session.add(PrivacySetting(user_id=user_id, **DEFAULT_PRIVACY_SETTINGS.to_dict()))
        except sa_exc.IntegrityError:
            # Created concurrently by another caller.
            existing = await self.find_user_privacy_settings(user_id)
            if existing is not None:
                return existing
            raise StorageError("Privacy settings could not be created") from None
        except sa_exc.SQLAlchemyError as e:
            logger.error("privacy_settings_create_failed", user_hash=hash_uid(user_id), error=str(e))
            raise StorageError("Privacy settings could not be created") from e

        logger.info("privacy_settings_created", user_hash=hash_uid(user_id))
        return DEFAULT_PRIVACY_SETTINGS

    async def update_privacy_settings(
        self,
        user_id: str,
        updates: PrivacySettingsUpdate | Mapping[str, Any],
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> PrivacySettingsView:
        """
        Apply a partial update and audit the diff.

        Raises:
            ValidationError: A retention period is below one day, or a key is unknown
        """
        if not isinstance(updates, PrivacySettingsUpdate):
            updates = PrivacySettingsUpdate.from_mapping(updates)
        values = updates.changed_values()
        for name in _RETENTION_FIELDS:
            if name in values and values[name] < 1:
                raise ValidationError(f"{name} must be at least 1 day")

        previous = await self.get_user_privacy_settings(user_id)
        changes = {
            name: {"from": getattr(previous, name), "to": value}
            for name, value in values.items()
            if getattr(previous, name) != value
        }

        try:
            async with self._session_factory() as session, session.begin():
                record = await session.scalar(
                    select(PrivacySetting).where(PrivacySetting.user_id == user_id)
                )
                if record is None:
                    record = PrivacySetting(user_id=user_id, **previous.to_dict())
                    session.add(record)
                for name, value in values.items():
                    setattr(record, name, value)
                await session.flush()
                current = PrivacySettingsView.from_record(record)
        except sa_exc.SQLAlchemyError as e:
            logger.error("privacy_settings_update_failed", user_hash=hash_uid(user_id), error=str(e))
            raise StorageError("Privacy settings update failed") from e

        await self._audit.log_privacy(
            AuditAction.PRIVACY_SETTINGS_UPDATE,
            user_id,
            {
                "changes": changes,
                "previousSettings": previous.to_dict(),
                "newSettings": current.to_dict(),
            },
            ip_address,
            user_agent,
        )
        logger.info("privacy_settings_updated", user_hash=hash_uid(user_id), changed=sorted(changes))
        return current

    async def reset_to_defaults(
        self, user_id: str, ip_address: str | None = None, user_agent: str | None = None
    ) -> PrivacySettingsView:
        return await self.update_privacy_settings(
            user_id,
            PrivacySettingsUpdate(**DEFAULT_PRIVACY_SETTINGS.to_dict()),
            ip_address,
            user_agent,
        )

    async def get_retention_preferences(self, user_id: str) -> dict[str, int]:
        settings = await self.get_user_privacy_settings(user_id)
        return {
            "audio": settings.audio_retention_days,
            "transcription": settings.transcription_retention_days,
        }

    async def is_operation_allowed(self, user_id: str, operation: PrivacyOperation) -> bool:
        attribute, _ = OPERATION_TOGGLES[PrivacyOperation(operation)]
        settings = await self.get_user_privacy_settings(user_id)
        return bool(getattr(settings, attribute))

    async def validate_privacy_for_operation(
        self, user_id: str, operation: PrivacyOperation | str
    ) -> None:
        """
        Raises:
            PrivacyDisabledError: The matching toggle is off
        """
        try:
            resolved = PrivacyOperation(operation)
        except ValueError:
            logger.debug("privacy_gate_unchecked_operation", operation=str(operation))
            return

        attribute, message = OPERATION_TOGGLES[resolved]
        settings = await self.get_user_privacy_settings(user_id)
        if not getattr(settings, attribute):
            raise PrivacyDisabledError(resolved.value, message)

    async def get_privacy_summary(self, user_id: str) -> dict[str, Any]:
        """Human-oriented overview of retention and feature toggles."""
        settings = await self.get_user_privacy_settings(user_id)
        return {
            "dataRetention": {
                "audio": f"{settings.audio_retention_days} days",
                "transcriptions": f"{settings.transcription_retention_days} days",
            },
            "dataUsage": {
                "analytics": settings.allow_analytics,
                "dataSharing": settings.allow_data_sharing,
                "aiTraining": settings.ai_training_consent,
            },
            "communications": {"marketingEmails": settings.marketing_emails},
            "recording": {"sessionRecording": settings.session_recording},
        }
