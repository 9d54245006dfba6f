"""
Policy-driven data retention.

RetentionScheduler owns the global RetentionPolicy rows and the cleanup
routines that enforce them. Each cleanup computes ``cutoff = now - days``
and deletes strictly older rows through DomainPurger in a single
transaction. Runs that delete something are recorded in the audit trail as
``data_delete_complete``, and that audit trail is what
``get_cleanup_statistics`` reports from.

The global policy applies to every user. A user with their own PrivacySetting
is swept again by ``cleanup_user_data`` with their own audio and
transcription periods, so their effective retention is the shorter of the two.

Every public cleanup holds the global sweep lock, so none of them can
interleave with a GDPR delete.
``run_automated_cleanup`` is the daily job. It holds the global sweep lock
(no GDPR delete runs at the same time) and isolates failures per data
type and per user.

Usage:
    retention = RetentionScheduler(session_factory, audit_log, privacy, locks)
    await retention.seed_default_policies()
    report = await retention.run_automated_cleanup()
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trust_engine.infra.monitoring import record_retention_deletion, record_retention_error
from trust_engine.lib.exceptions import NotFoundError, StorageError, ValidationError
from trust_engine.lib.locks import DataLockManager
from trust_engine.lib.security import hash_uid
from trust_engine.models.audit import AuditAction
from trust_engine.models.base import utcnow
from trust_engine.models.export_request import DataCategory
from trust_engine.models.retention import (
    DEFAULT_RETENTION_DAYS,
    DataDomain,
    PrivacySetting,
    RetentionPolicy,
)
from trust_engine.services.audit_log import AuditLog
from trust_engine.services.domain_purge import DomainPurger, PurgeResult, PurgeScope
from trust_engine.services.privacy_preferences import PrivacyPreferences

logger = structlog.get_logger(__name__)


@dataclass
class CleanupResult:
    """Outcome of one cleanup routine."""

    data_type: str
    deleted_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class SweepReport:
    """Outcome of one daily sweep."""

    results: list[CleanupResult] = field(default_factory=list)
    user_results: list[CleanupResult] = field(default_factory=list)
    audit_logs_deleted: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return (
            sum(r.deleted_count for r in self.results)
            + sum(r.deleted_count for r in self.user_results)
            + self.audit_logs_deleted
        )


@dataclass(frozen=True)
class _DomainSpec:
    category: DataCategory
    counted_tables: tuple[str, ...]
    resource_type: str


# How each retention domain maps onto the purge primitive, and which tables
# make up its reported deletedCount.
DOMAIN_SPECS: dict[DataDomain, _DomainSpec] = {
    DataDomain.AUDIO: _DomainSpec(DataCategory.AUDIO, ("audio_chunks",), "audio"),
    DataDomain.TRANSCRIPTION: _DomainSpec(
        DataCategory.TRANSCRIPTIONS,
        ("transcription_results", "transcription_cache"),
        "transcription",
    ),
    DataDomain.SESSION: _DomainSpec(DataCategory.SESSIONS, ("interview_sessions",), "session"),
    DataDomain.ANALYTICS: _DomainSpec(
        DataCategory.ANALYTICS, ("practice_analytics", "usage_patterns"), "analytics"
    ),
}


class RetentionScheduler:
    """Global retention policies and the cleanups that enforce them."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit_log: AuditLog,
        privacy: PrivacyPreferences,
        locks: DataLockManager,
        purger: DomainPurger | None = None,
        audit_retention_days: int = 365,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit_log
        self._privacy = privacy
        self._locks = locks
        self._purger = purger or DomainPurger()
        self._audit_retention_days = audit_retention_days
        self._clock = clock

    # -------------------------------------------------------------------------
    # Policy CRUD
    # -------------------------------------------------------------------------

    @staticmethod
    def _domain(data_type: DataDomain | str) -> DataDomain:
        try:
            return DataDomain(data_type)
        except ValueError as e:
            raise ValidationError(f"Unknown data type: {data_type}") from e

    async def get_retention_policies(self) -> list[RetentionPolicy]:
        """Active policies ordered by data type."""
        stmt = (
            select(RetentionPolicy)
            .where(RetentionPolicy.is_active.is_(True))
            .order_by(RetentionPolicy.data_type)
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def get_retention_policy(self, data_type: DataDomain | str) -> RetentionPolicy:
        domain = self._domain(data_type)
        async with self._session_factory() as session:
            policy = await session.scalar(
                select(RetentionPolicy).where(RetentionPolicy.data_type == domain.value)
            )
        if policy is None:
            raise NotFoundError(f"No retention policy for {domain.value}")
        return policy

    async def update_retention_policy(
        self,
        data_type: DataDomain | str,
        retention_days: int,
        auto_delete: bool = True,
        description: str | None = None,
    ) -> RetentionPolicy:
        """
        Create or replace the policy for one data type.

        Raises:
            ValidationError: Unknown data type or retention below one day
        """
        domain = self._domain(data_type)
        if retention_days < 1:
            raise ValidationError("retention_days must be at least 1")

        try:
            async with self._session_factory() as session, session.begin():
                policy = await session.scalar(
                    select(RetentionPolicy).where(RetentionPolicy.data_type == domain.value)
                )
                if policy is None:
                    policy = RetentionPolicy(data_type=domain.value)
                    session.add(policy)
                policy.retention_days = retention_days
                policy.auto_delete = auto_delete
                policy.is_active = True
                if description is not None:
                    policy.description = description
        except sa_exc.SQLAlchemyError as e:
            logger.error("retention_policy_update_failed", data_type=domain.value, error=str(e))
            raise StorageError("Retention policy update failed") from e

        logger.info(
            "retention_policy_updated",
            data_type=domain.value,
            retention_days=retention_days,
            auto_delete=auto_delete,
        )
        return policy

    async def deactivate_retention_policy(self, data_type: DataDomain | str) -> None:
        domain = self._domain(data_type)
        async with self._session_factory() as session, session.begin():
            policy = await session.scalar(
                select(RetentionPolicy).where(RetentionPolicy.data_type == domain.value)
            )
            if policy is None:
                raise NotFoundError(f"No retention policy for {domain.value}")
            policy.is_active = False

    async def seed_default_policies(self) -> int:
        """Insert the default policy for every domain that has none. Returns rows created."""
        created = 0
        async with self._session_factory() as session, session.begin():
            existing = set(
                (await session.execute(select(RetentionPolicy.data_type))).scalars().all()
            )
            for domain, (days, description) in DEFAULT_RETENTION_DAYS.items():
                if domain.value not in existing:
                    session.add(
                        RetentionPolicy(
                            data_type=domain.value,
                            retention_days=days,
                            auto_delete=True,
                            description=description,
                        )
                    )
                    created += 1
        return created

    # -------------------------------------------------------------------------
    # Cleanup Routines
    # -------------------------------------------------------------------------

    async def _run_cleanup(
        self,
        domain: DataDomain,
        retention_days: int,
        label: str,
        user_id: str | None = None,
    ) -> CleanupResult:
        """Purge one domain in one transaction and audit the outcome."""
        result = CleanupResult(data_type=label)
        spec = DOMAIN_SPECS[domain]
        cutoff = self._clock() - timedelta(days=retention_days)

        try:
            async with self._session_factory() as session, session.begin():
                purged: PurgeResult = await self._purger.purge(
                    session,
                    [spec.category],
                    PurgeScope(user_id=user_id, cutoff=cutoff),
                )
        except Exception as e:
            logger.error(
                "retention_cleanup_failed",
                data_type=label,
                user_hash=hash_uid(user_id) if user_id else None,
                error=str(e),
            )
            record_retention_error(label)
            result.errors.append(f"{label} cleanup failed: {e}")
            return result

        result.deleted_count = purged.count(*spec.counted_tables)
        record_retention_deletion(label, purged.total)
        if result.deleted_count > 0:
            logger.info(
                "retention_cleanup",
                data_type=label,
                deleted=result.deleted_count,
                retention_days=retention_days,
                user_hash=hash_uid(user_id) if user_id else None,
            )
            details: dict[str, Any] = {
                "dataType": label,
                "deletedCount": result.deleted_count,
                "retentionDays": retention_days,
                "cutoffDate": cutoff.isoformat(),
            }
            await self._audit.log_data_management(
                AuditAction.DATA_DELETE_COMPLETE,
                user_id,
                details=details,
                resource_type=spec.resource_type,
            )
        return result

    async def _cleanup_global(self, domain: DataDomain, retention_days: int) -> CleanupResult:
        async with self._locks.sweep_scope():
            return await self._run_cleanup(domain, retention_days, domain.value)

    async def cleanup_audio_data(self, retention_days: int) -> CleanupResult:
        return await self._cleanup_global(DataDomain.AUDIO, retention_days)

    async def cleanup_transcription_data(self, retention_days: int) -> CleanupResult:
        """Transcription results and the transcription cache."""
        return await self._cleanup_global(DataDomain.TRANSCRIPTION, retention_days)

    async def cleanup_session_data(self, retention_days: int) -> CleanupResult:
        """Sessions older than the cutoff, with their interactions and metrics first."""
        return await self._cleanup_global(DataDomain.SESSION, retention_days)

    async def cleanup_analytics_data(self, retention_days: int) -> CleanupResult:
        """Practice analytics and risk-engine usage patterns."""
        return await self._cleanup_global(DataDomain.ANALYTICS, retention_days)

    async def _cleanup_user_data_unlocked(self, user_id: str) -> list[CleanupResult]:
        settings = await self._privacy.find_user_privacy_settings(user_id)
        if settings is None:
            return []
        return [
            await self._run_cleanup(
                DataDomain.AUDIO, settings.audio_retention_days, "user_audio", user_id
            ),
            await self._run_cleanup(
                DataDomain.TRANSCRIPTION,
                settings.transcription_retention_days,
                "user_transcription",
                user_id,
            ),
        ]

    async def cleanup_user_data(self, user_id: str) -> list[CleanupResult]:
        """Apply a user's own audio/transcription retention. Users without settings are skipped."""
        async with self._locks.user_scope(user_id):
            return await self._cleanup_user_data_unlocked(user_id)

    # -------------------------------------------------------------------------
    # Daily Sweep
    # -------------------------------------------------------------------------

    async def _dispatch(self, domain: DataDomain, retention_days: int) -> CleanupResult:
        # Caller holds the sweep lock.
        return await self._run_cleanup(domain, retention_days, domain.value)

    async def _users_with_overrides(self) -> list[str]:
        async with self._session_factory() as session:
            return list((await session.execute(select(PrivacySetting.user_id))).scalars().all())

    async def run_automated_cleanup(self) -> SweepReport:
        """
        Daily sweep over every active auto-delete policy.

        A failing data type, user or audit cleanup is recorded in the
        report and the sweep moves on.
        """
        report = SweepReport()
        logger.info("retention_sweep_started")

        async with self._locks.sweep_scope():
            try:
                policies = await self.get_retention_policies()
            except sa_exc.SQLAlchemyError as e:
                logger.error("retention_sweep_policy_load_failed", error=str(e))
                report.errors.append(f"policy load failed: {e}")
                policies = []

            for policy in policies:
                if not policy.auto_delete:
                    continue
                try:
                    domain = DataDomain(policy.data_type)
                except ValueError:
                    logger.warning("retention_unknown_data_type", data_type=policy.data_type)
                    continue
                result = await self._dispatch(domain, policy.retention_days)
                report.results.append(result)
                report.errors.extend(result.errors)

            try:
                user_ids = await self._users_with_overrides()
            except sa_exc.SQLAlchemyError as e:
                logger.error("retention_sweep_user_load_failed", error=str(e))
                report.errors.append(f"user override load failed: {e}")
                user_ids = []

            for user_id in user_ids:
                try:
                    user_results = await self._cleanup_user_data_unlocked(user_id)
                except Exception as e:
                    logger.error("retention_user_cleanup_failed", user_hash=hash_uid(user_id), error=str(e))
                    report.errors.append(f"user cleanup failed for {hash_uid(user_id)}: {e}")
                    continue
                report.user_results.extend(user_results)
                for result in user_results:
                    report.errors.extend(result.errors)

            try:
                report.audit_logs_deleted = await self._audit.cleanup_old_logs(
                    self._audit_retention_days
                )
            except StorageError as e:
                report.errors.append(f"audit log cleanup failed: {e}")

        logger.info(
            "retention_sweep_finished",
            deleted=report.total_deleted,
            errors=len(report.errors),
        )
        return report

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    async def get_cleanup_statistics(self, days: int = 30) -> dict[str, dict[str, Any]]:
        """
        Deletions per data type over the last ``days``, read from the audit trail.

        Returns:
            {dataType: {"totalDeleted", "cleanupCount", "lastCleanup"}}
        """
        since = self._clock() - timedelta(days=days)
        entries = await self._audit.find_entries(AuditAction.DATA_DELETE_COMPLETE, since)

        stats: dict[str, dict[str, Any]] = {}
        for entry in entries:
            details = entry.details or {}
            data_type = details.get("dataType", "unknown")
            bucket = stats.setdefault(
                data_type, {"totalDeleted": 0, "cleanupCount": 0, "lastCleanup": None}
            )
            bucket["totalDeleted"] += int(details.get("deletedCount", 0))
            bucket["cleanupCount"] += 1
            if bucket["lastCleanup"] is None or entry.created_at > bucket["lastCleanup"]:
                bucket["lastCleanup"] = entry.created_at
        return stats
