"""
Consent ledger: per (user, consent type, policy version) consent state.

The ledger keeps one row per (user_id, consent_type, version). Granting
stamps ``granted_at`` and clears ``revoked_at``; revoking stamps
``revoked_at`` and keeps ``granted_at`` as evidence of the earlier grant.
Rows are never deleted on revocation. A missing row simply means the
consent was not granted.

Every change is written to the audit trail (consent_grant / consent_revoke).

Processing actions map to the consent types they need through a static,
exhaustive table over ProcessingAction. ``validate_consents_for_action``
is the gate used before audio capture, transcription and so on.

Usage:
    ledger = ConsentLedger(session_factory, audit_log, ip_secret)
    await ledger.update_consent(user_id, ConsentRequest(ConsentType.AUDIO_PROCESSING, granted=True))
    await ledger.validate_consents_for_action(user_id, ProcessingAction.AUDIO_CAPTURE)
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

import structlog
from sqlalchemy import func, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trust_engine.lib.exceptions import ConsentMissingError, StorageError, ValidationError
from trust_engine.lib.security import hash_ip, hash_uid
from trust_engine.models.audit import AuditAction
from trust_engine.models.base import utcnow
from trust_engine.models.consent import REQUIRED_CONSENTS, ConsentRecord, ConsentType
from trust_engine.services.audit_log import AuditLog

logger = structlog.get_logger(__name__)

CURRENT_POLICY_VERSION = "1.0.0"


class ProcessingAction(StrEnum):
    """Data processing actions gated by consent."""

    AUDIO_CAPTURE = "audio_capture"
    TRANSCRIPTION = "transcription"
    RESPONSE_GENERATION = "response_generation"
    ANALYTICS_TRACKING = "analytics_tracking"
    MARKETING_EMAIL = "marketing_email"
    AI_MODEL_TRAINING = "ai_model_training"
    DATA_SHARING = "data_sharing"


ACTION_CONSENTS: dict[ProcessingAction, tuple[ConsentType, ...]] = {
    ProcessingAction.AUDIO_CAPTURE: (ConsentType.AUDIO_PROCESSING, ConsentType.DATA_STORAGE),
    ProcessingAction.TRANSCRIPTION: (ConsentType.AUDIO_PROCESSING, ConsentType.DATA_STORAGE),
    ProcessingAction.RESPONSE_GENERATION: (ConsentType.DATA_STORAGE,),
    ProcessingAction.ANALYTICS_TRACKING: (ConsentType.ANALYTICS,),
    ProcessingAction.MARKETING_EMAIL: (ConsentType.MARKETING,),
    ProcessingAction.AI_MODEL_TRAINING: (ConsentType.AI_TRAINING,),
    ProcessingAction.DATA_SHARING: (ConsentType.DATA_SHARING,),
}


# =============================================================================
# Value Objects
# =============================================================================


@dataclass(frozen=True)
class ConsentRequest:
    """One grant or revoke decision."""

    consent_type: ConsentType
    granted: bool
    version: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class ConsentStatus:
    """Current state of one consent type for a user."""

    consent_type: ConsentType
    granted: bool
    granted_at: datetime | None
    revoked_at: datetime | None
    version: str
    is_required: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "consentType": self.consent_type.value,
            "granted": self.granted,
            "grantedAt": self.granted_at.isoformat() if self.granted_at else None,
            "revokedAt": self.revoked_at.isoformat() if self.revoked_at else None,
            "version": self.version,
            "isRequired": self.is_required,
        }


# =============================================================================
# Consent Ledger
# =============================================================================


class ConsentLedger:
    """
    Versioned consent state with an action gate.

    Attributes:
        _session_factory: Async session factory.
        _audit: Audit trail for grant/revoke events.
        _ip_secret: HMAC key for hashing request IPs.
        current_version: Policy version consents are evaluated against.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit_log: AuditLog,
        ip_secret: bytes,
        current_version: str = CURRENT_POLICY_VERSION,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit_log
        self._ip_secret = ip_secret
        self.current_version = current_version
        self._clock = clock

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def _upsert(self, user_id: str, request: ConsentRequest, version: str) -> ConsentRecord:
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            stmt = select(ConsentRecord).where(
                ConsentRecord.user_id == user_id,
                ConsentRecord.consent_type == request.consent_type.value,
                ConsentRecord.version == version,
            )
            record = (await session.execute(stmt)).scalar_one_or_none()
            if record is None:
                record = ConsentRecord(
                    user_id=user_id,
                    consent_type=request.consent_type.value,
                    version=version,
                )
                session.add(record)

            record.granted = request.granted
            if request.granted:
                record.granted_at = now
                record.revoked_at = None
            else:
                record.revoked_at = now
            record.ip_hash = (
                hash_ip(request.ip_address, self._ip_secret) if request.ip_address else None
            )
            record.user_agent = request.user_agent
        return record

    async def update_consent(self, user_id: str, request: ConsentRequest) -> ConsentStatus:
        """
        Grant or revoke one consent type.

        A concurrent insert of the same (user, type, version) is retried once
        as an update, so the last writer wins.

        Raises:
            ValidationError: Unknown consent type
            StorageError: Persisting the decision failed
        """
        try:
            consent_type = ConsentType(request.consent_type)
        except ValueError as e:
            raise ValidationError(f"Unknown consent type: {request.consent_type}") from e
        request = ConsentRequest(
            consent_type=consent_type,
            granted=request.granted,
            version=request.version,
            ip_address=request.ip_address,
            user_agent=request.user_agent,
        )
        version = request.version or self.current_version

        try:
            try:
                record = await self._upsert(user_id, request, version)
            except sa_exc.IntegrityError:
                logger.info("consent_upsert_race", user_hash=hash_uid(user_id), type=consent_type.value)
                record = await self._upsert(user_id, request, version)
        except sa_exc.SQLAlchemyError as e:
            logger.error("consent_update_failed", user_hash=hash_uid(user_id), error=str(e))
            raise StorageError("Consent update failed") from e

        await self._audit.log_privacy(
            AuditAction.CONSENT_GRANT if request.granted else AuditAction.CONSENT_REVOKE,
            user_id,
            {"consentType": consent_type.value, "version": version, "granted": request.granted},
            request.ip_address,
            request.user_agent,
        )
        logger.info(
            "consent_updated",
            user_hash=hash_uid(user_id),
            type=consent_type.value,
            granted=request.granted,
            version=version,
        )
        return self._status(consent_type, record)

    async def grant_multiple_consents(
        self,
        user_id: str,
        consent_types: Iterable[ConsentType],
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> list[ConsentStatus]:
        """Grant several types at once (onboarding). Each grant is audited."""
        return [
            await self.update_consent(
                user_id,
                ConsentRequest(
                    consent_type=ConsentType(t),
                    granted=True,
                    ip_address=ip_address,
                    user_agent=user_agent,
                ),
            )
            for t in consent_types
        ]

    async def revoke_all_consents(
        self,
        user_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> list[ConsentStatus]:
        """Revoke every consent type (account deletion). Each revoke is audited."""
        return [
            await self.update_consent(
                user_id,
                ConsentRequest(
                    consent_type=t,
                    granted=False,
                    ip_address=ip_address,
                    user_agent=user_agent,
                ),
            )
            for t in ConsentType
        ]

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _status(self, consent_type: ConsentType, record: ConsentRecord | None) -> ConsentStatus:
        return ConsentStatus(
            consent_type=consent_type,
            granted=bool(record.granted) if record is not None else False,
            granted_at=record.granted_at if record is not None else None,
            revoked_at=record.revoked_at if record is not None else None,
            version=record.version if record is not None else self.current_version,
            is_required=consent_type in REQUIRED_CONSENTS,
        )

    async def get_user_consents(self, user_id: str) -> list[ConsentStatus]:
        """Status of every consent type at the current version. Missing means not granted."""
        stmt = select(ConsentRecord).where(
            ConsentRecord.user_id == user_id,
            ConsentRecord.version == self.current_version,
        )
        try:
            async with self._session_factory() as session:
                records = (await session.execute(stmt)).scalars().all()
        except sa_exc.SQLAlchemyError as e:
            logger.error("consent_query_failed", user_hash=hash_uid(user_id), error=str(e))
            raise StorageError("Consent query failed") from e

        by_type = {r.consent_type: r for r in records}
        return [self._status(t, by_type.get(t.value)) for t in ConsentType]

    async def has_consent(self, user_id: str, consent_type: ConsentType) -> bool:
        consents = await self.get_user_consents(user_id)
        return any(c.consent_type == consent_type and c.granted for c in consents)

    async def get_missing_required_consents(self, user_id: str) -> list[ConsentType]:
        consents = await self.get_user_consents(user_id)
        return [c.consent_type for c in consents if c.is_required and not c.granted]

    async def has_required_consents(self, user_id: str) -> bool:
        return not await self.get_missing_required_consents(user_id)

    async def get_consent_history(
        self, user_id: str, consent_type: ConsentType | None = None
    ) -> list[ConsentRecord]:
        """All stored records of a user across versions, newest first."""
        stmt = select(ConsentRecord).where(ConsentRecord.user_id == user_id)
        if consent_type is not None:
            stmt = stmt.where(ConsentRecord.consent_type == ConsentType(consent_type).value)
        stmt = stmt.order_by(ConsentRecord.updated_at.desc(), ConsentRecord.created_at.desc())
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    # -------------------------------------------------------------------------
    # Action Gate
    # -------------------------------------------------------------------------

    @staticmethod
    def is_consent_required_for_action(action: ProcessingAction | str) -> list[ConsentType]:
        """
        Consent types an action needs.

        Unknown action names need nothing, but are logged so that a missing
        table entry does not go unnoticed.
        """
        try:
            resolved = ProcessingAction(action)
        except ValueError:
            logger.warning("consent_unmapped_action", action=str(action))
            return []
        return list(ACTION_CONSENTS[resolved])

    async def validate_consents_for_action(
        self, user_id: str, action: ProcessingAction | str
    ) -> None:
        """
        Raises:
            ConsentMissingError: Naming the first required type that is not granted
        """
        required = self.is_consent_required_for_action(action)
        if not required:
            return
        granted = {c.consent_type for c in await self.get_user_consents(user_id) if c.granted}
        for consent_type in required:
            if consent_type not in granted:
                logger.info(
                    "consent_gate_blocked",
                    user_hash=hash_uid(user_id),
                    action=str(action),
                    missing=consent_type.value,
                )
                raise ConsentMissingError(consent_type.value, str(action))

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    async def get_consent_statistics(self) -> dict[str, dict[str, int]]:
        """Granted/revoked counts per type at the current version."""
        stmt = (
            select(ConsentRecord.consent_type, ConsentRecord.granted, func.count())
            .where(ConsentRecord.version == self.current_version)
            .group_by(ConsentRecord.consent_type, ConsentRecord.granted)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        stats = {t.value: {"granted": 0, "revoked": 0} for t in ConsentType}
        for consent_type, granted, count in rows:
            bucket = stats.setdefault(consent_type, {"granted": 0, "revoked": 0})
            bucket["granted" if granted else "revoked"] += count
        return stats
