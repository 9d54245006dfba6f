"""
GDPR export and erasure requests (Art. 15, 17 & 20).

A request is persisted as ``pending`` and its id returned straight away;
processing runs as a background job:

    pending -> processing -> completed
                          -> failed

Export requests write a JSON or CSV snapshot through the FileStore and
publish it under ``export_url`` until ``expires_at``. Delete requests hold
the per-user data lock and purge the selected domains in one transaction;
with ``all`` the account row goes last. The request row itself and the
user's audit entries are kept, so the request stays pollable and the trail
stays intact.

There is no built-in watchdog for requests stuck in ``processing``:
callers poll with their own timeout (``poll_export_request``) and
operators can list stragglers with ``find_stale_requests``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trust_engine.infra.monitoring import record_erasure_outcome, track_erasure_in_flight
from trust_engine.lib.config import ComplianceSettings
from trust_engine.lib.encryption import KeyManager
from trust_engine.lib.exceptions import (
    JobTimeoutError,
    NotFoundError,
    StorageError,
    TrustEngineError,
    ValidationError,
)
from trust_engine.lib.locks import DataLockManager
from trust_engine.lib.security import hash_uid, sanitize_file_name
from trust_engine.models.audit import AuditAction
from trust_engine.models.base import utcnow
from trust_engine.models.coaching import (
    AudioChunk,
    Interaction,
    InterviewSession,
    PracticeSession,
    TranscriptionResult,
)
from trust_engine.models.export_request import (
    DataCategory,
    DataExportRequest,
    ExportFormat,
    ExportStatus,
    RequestType,
)
from trust_engine.models.retention import DataDomain
from trust_engine.services.audit_log import AuditLog
from trust_engine.services.collaborators import FileStore, UserDirectory
from trust_engine.services.consent_ledger import ConsentLedger
from trust_engine.services.domain_purge import DomainPurger, PurgeScope
from trust_engine.services.export_builder import collect_user_data, render_export
from trust_engine.services.privacy_preferences import PrivacyPreferences
from trust_engine.services.retention_scheduler import RetentionScheduler
from trust_engine.workflows.jobs import BackgroundJobs

logger = structlog.get_logger(__name__)

GENERIC_FAILURE_MESSAGE = "Request processing failed"

# Categories whose deletion also removes the user's encryption keys.
_KEY_CATEGORIES = frozenset({DataCategory.PRIVACY, DataCategory.ALL})


# =============================================================================
# Status View
# =============================================================================


@dataclass(frozen=True)
class ExportRequestStatus:
    """What a user may see about one of their requests."""

    id: str
    request_type: RequestType
    status: ExportStatus
    requested_data_types: list[str]
    export_format: ExportFormat
    export_url: str | None
    expires_at: datetime | None
    completed_at: datetime | None
    error_message: str | None
    created_at: datetime

    @classmethod
    def from_record(cls, record: DataExportRequest) -> ExportRequestStatus:
        return cls(
            id=record.id,
            request_type=RequestType(record.request_type),
            status=ExportStatus(record.status),
            requested_data_types=list(record.requested_data_types or []),
            export_format=ExportFormat(record.export_format),
            export_url=record.export_url,
            expires_at=record.expires_at,
            completed_at=record.completed_at,
            error_message=record.error_message,
            created_at=record.created_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "requestType": self.request_type.value,
            "status": self.status.value,
            "requestedDataTypes": self.requested_data_types,
            "exportFormat": self.export_format.value,
            "exportUrl": self.export_url,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "errorMessage": self.error_message,
            "createdAt": self.created_at.isoformat(),
        }


# =============================================================================
# Orchestrator
# =============================================================================


class ErasureOrchestrator:
    """Export / erasure request lifecycle.

    Usage:
        orchestrator = ErasureOrchestrator(...)
        request_id = await orchestrator.create_export_request(
            user_id, RequestType.EXPORT, [DataCategory.ALL]
        )
        status = await poll_export_request(orchestrator, request_id, timeout=60)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit_log: AuditLog,
        user_directory: UserDirectory,
        file_store: FileStore,
        locks: DataLockManager,
        key_manager: KeyManager,
        consent_ledger: ConsentLedger,
        privacy: PrivacyPreferences,
        retention: RetentionScheduler,
        jobs: BackgroundJobs,
        settings: ComplianceSettings | None = None,
        purger: DomainPurger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit_log
        self._users = user_directory
        self._files = file_store
        self._locks = locks
        self._keys = key_manager
        self._consents = consent_ledger
        self._privacy = privacy
        self._retention = retention
        self._jobs = jobs
        self._settings = settings or ComplianceSettings()
        self._purger = purger or DomainPurger()
        self._clock = clock

    # -------------------------------------------------------------------------
    # Request Creation
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate(
        request_type: RequestType | str,
        data_types: Iterable[DataCategory | str],
        export_format: ExportFormat | str,
    ) -> tuple[RequestType, list[DataCategory], ExportFormat]:
        try:
            resolved_type = RequestType(request_type)
        except ValueError as e:
            raise ValidationError(f"Unknown request type: {request_type}") from e
        try:
            resolved_format = ExportFormat(export_format)
        except ValueError as e:
            raise ValidationError(f"Unsupported export format: {export_format}") from e

        categories: list[DataCategory] = []
        for raw in data_types:
            try:
                category = DataCategory(raw)
            except ValueError as e:
                raise ValidationError(f"Unknown data type: {raw}") from e
            if category not in categories:
                categories.append(category)
        if not categories:
            raise ValidationError("At least one data type is required")
        return resolved_type, categories, resolved_format

    async def create_export_request(
        self,
        user_id: str,
        request_type: RequestType | str,
        data_types: Iterable[DataCategory | str],
        export_format: ExportFormat | str = ExportFormat.JSON,
    ) -> str:
        """
        Persist a request and schedule its processing.

        Returns:
            The request id, before any processing has happened

        Raises:
            NotFoundError: Unknown user
            ValidationError: Unknown request type, data type or format, or no data types
        """
        resolved_type, categories, resolved_format = self._validate(
            request_type, data_types, export_format
        )
        if not await self._users.exists(user_id):
            raise NotFoundError(f"User {hash_uid(user_id)} not found")

        now = self._clock()
        record = DataExportRequest(
            user_id=user_id,
            request_type=resolved_type.value,
            requested_data_types=[c.value for c in categories],
            export_format=resolved_format.value,
            status=ExportStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session_factory() as session, session.begin():
                session.add(record)
        except sa_exc.SQLAlchemyError as e:
            logger.error("export_request_create_failed", user_hash=hash_uid(user_id), error=str(e))
            raise StorageError("Export request could not be created") from e
        request_id = record.id

        action = (
            AuditAction.DATA_EXPORT_REQUEST
            if resolved_type is RequestType.EXPORT
            else AuditAction.DATA_DELETE_REQUEST
        )
        await self._audit.log_data_management(
            action,
            user_id,
            request_id,
            {
                "requestType": resolved_type.value,
                "dataTypes": [c.value for c in categories],
                "format": resolved_format.value,
            },
        )
        logger.info(
            "export_request_created",
            request_id=request_id,
            request_type=resolved_type.value,
            user_hash=hash_uid(user_id),
        )

        self._jobs.spawn(self.process_request(request_id), name=f"gdpr-request:{request_id}")
        return request_id

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def _transition(
        self,
        request_id: str,
        current: ExportStatus,
        target: ExportStatus,
        **values: Any,
    ) -> bool:
        """Move ``current -> target`` only if the row is still in ``current``."""
        current.ensure_transition(target)
        stmt = (
            update(DataExportRequest)
            .where(DataExportRequest.id == request_id, DataExportRequest.status == current.value)
            .values(status=target.value, updated_at=self._clock(), **values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return (result.rowcount or 0) == 1

    async def _load(self, request_id: str) -> DataExportRequest | None:
        async with self._session_factory() as session:
            return await session.get(DataExportRequest, request_id)

    async def process_request(self, request_id: str) -> None:
        """
        Drive one request to a terminal state.

        Only the caller that wins the ``pending -> processing`` claim does any
        work; a second call for the same request returns immediately.
        """
        if not await self._transition(request_id, ExportStatus.PENDING, ExportStatus.PROCESSING):
            logger.warning("export_request_not_claimed", request_id=request_id)
            return

        request = await self._load(request_id)
        if request is None:
            logger.error("export_request_vanished", request_id=request_id)
            return
        request_type = RequestType(request.request_type)

        with track_erasure_in_flight():
            try:
                if request_type is RequestType.EXPORT:
                    completion = await self._process_export(request)
                else:
                    completion = await self._process_deletion(request)
            except Exception as e:
                message = e.public_message if isinstance(e, TrustEngineError) else GENERIC_FAILURE_MESSAGE
                logger.error(
                    "export_request_failed",
                    request_id=request_id,
                    request_type=request_type.value,
                    user_hash=hash_uid(request.user_id),
                    error=str(e),
                )
                await self._transition(
                    request_id,
                    ExportStatus.PROCESSING,
                    ExportStatus.FAILED,
                    error_message=message,
                )
                record_erasure_outcome(request_type.value, ExportStatus.FAILED.value)
                return

            await self._transition(
                request_id,
                ExportStatus.PROCESSING,
                ExportStatus.COMPLETED,
                completed_at=self._clock(),
                **completion,
            )
            record_erasure_outcome(request_type.value, ExportStatus.COMPLETED.value)

        if request_type is RequestType.EXPORT:
            await self._audit.log_data_management(
                AuditAction.DATA_EXPORT_DOWNLOAD,
                request.user_id,
                request_id,
                {
                    "event": "artifact_ready",
                    "exportUrl": completion["export_url"],
                    "expiresAt": completion["expires_at"].isoformat(),
                },
            )
        logger.info("export_request_completed", request_id=request_id, request_type=request_type.value)

    async def _process_export(self, request: DataExportRequest) -> dict[str, Any]:
        async with self._session_factory() as session:
            snapshot = await collect_user_data(
                session, request.user_id, request.requested_data_types
            )
        now = self._clock()
        snapshot["exportedAt"] = now.isoformat()

        export_format = ExportFormat(request.export_format)
        data = render_export(snapshot, export_format)
        # User ids are opaque, so the artifact is named after the request.
        file_name = (
            f"user-data-export-{request.id}-{int(now.timestamp() * 1000)}.{export_format.value}"
        )
        await self._files.write(file_name, data)

        logger.info(
            "export_artifact_written",
            request_id=request.id,
            user_hash=hash_uid(request.user_id),
            size=len(data),
        )
        return {
            "export_url": f"{self._settings.export_url_prefix}{file_name}",
            "expires_at": now + timedelta(days=self._settings.export_ttl_days),
        }

    async def _process_deletion(self, request: DataExportRequest) -> dict[str, Any]:
        user_id = request.user_id
        categories = [DataCategory(c) for c in request.requested_data_types]

        async with self._locks.user_scope(user_id):
            async with self._session_factory() as session, session.begin():
                result = await self._purger.purge(session, categories, PurgeScope(user_id=user_id))
            if _KEY_CATEGORIES.intersection(categories):
                self._keys.forget_user(user_id)

        await self._audit.log_data_management(
            AuditAction.DATA_DELETE_COMPLETE,
            user_id,
            request.id,
            {
                "dataType": "gdpr_erasure",
                "deletedCount": result.total,
                "deletedDataTypes": [c.value for c in categories],
                "deletedRows": result.counts,
                "deletionDate": self._clock().isoformat(),
            },
        )
        logger.info(
            "gdpr_erasure_completed",
            request_id=request.id,
            user_hash=hash_uid(user_id),
            deleted=result.total,
        )
        return {}

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_export_request_status(
        self, request_id: str, user_id: str | None = None
    ) -> ExportRequestStatus:
        """
        Raises:
            NotFoundError: No such request, or it belongs to another user
        """
        record = await self._load(request_id)
        if record is None or (user_id is not None and record.user_id != user_id):
            raise NotFoundError("Export request not found")
        return ExportRequestStatus.from_record(record)

    async def find_stale_requests(self, older_than: timedelta) -> list[ExportRequestStatus]:
        """Requests still pending/processing whose last update is older than ``older_than``."""
        cutoff = self._clock() - older_than
        stmt = (
            select(DataExportRequest)
            .where(
                DataExportRequest.status.in_(
                    [ExportStatus.PENDING.value, ExportStatus.PROCESSING.value]
                ),
                DataExportRequest.updated_at < cutoff,
            )
            .order_by(DataExportRequest.updated_at)
        )
        async with self._session_factory() as session:
            records = (await session.execute(stmt)).scalars().all()
        return [ExportRequestStatus.from_record(r) for r in records]

    # -------------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------------

    async def download_export_file(self, file_name: str, user_id: str) -> bytes:
        """
        Read an export artifact on behalf of its owner.

        Raises:
            ValidationError: The file name is not a plain name
            NotFoundError: No completed, unexpired request of this user owns the file
        """
        file_name = sanitize_file_name(file_name)
        stmt = select(DataExportRequest).where(
            DataExportRequest.user_id == user_id,
            DataExportRequest.export_url == f"{self._settings.export_url_prefix}{file_name}",
            DataExportRequest.status == ExportStatus.COMPLETED.value,
            DataExportRequest.expires_at > self._clock(),
        )
        async with self._session_factory() as session:
            request = await session.scalar(stmt)
        if request is None:
            raise NotFoundError("Export file not found or expired")

        try:
            data = await self._files.read(file_name)
        except FileNotFoundError as e:
            logger.error("export_artifact_missing", request_id=request.id)
            raise NotFoundError("Export file not found or expired") from e

        await self._audit.log_data_management(
            AuditAction.DATA_EXPORT_DOWNLOAD,
            user_id,
            request.id,
            {"fileName": file_name, "downloadDate": self._clock().isoformat()},
        )
        return data

    async def cleanup_expired_exports(self) -> int:
        """
        Remove expired artifacts and clear their URLs.

        A file that is already gone counts as removed. Any other per-file
        failure is logged and the request is retried on the next run.

        Returns:
            Number of requests cleaned up
        """
        stmt = select(DataExportRequest.id, DataExportRequest.export_url).where(
            DataExportRequest.status == ExportStatus.COMPLETED.value,
            DataExportRequest.expires_at < self._clock(),
            DataExportRequest.export_url.is_not(None),
        )
        async with self._session_factory() as session:
            expired = (await session.execute(stmt)).all()

        cleaned = 0
        for request_id, export_url in expired:
            file_name = export_url.rsplit("/", 1)[-1]
            try:
                await self._files.delete(file_name)
            except FileNotFoundError:
                logger.info("export_artifact_already_gone", request_id=request_id)
            except (OSError, ValidationError) as e:
                logger.warning("export_artifact_delete_failed", request_id=request_id, error=str(e))
                continue

            try:
                async with self._session_factory() as session, session.begin():
                    await session.execute(
                        update(DataExportRequest)
                        .where(DataExportRequest.id == request_id)
                        .values(export_url=None, updated_at=self._clock())
                        .execution_options(synchronize_session=False)
                    )
            except sa_exc.SQLAlchemyError as e:
                logger.warning("export_url_clear_failed", request_id=request_id, error=str(e))
                continue
            cleaned += 1

        logger.info("expired_exports_cleaned", cleaned=cleaned, found=len(expired))
        return cleaned

    # -------------------------------------------------------------------------
    # Transparency
    # -------------------------------------------------------------------------

    async def get_data_processing_summary(self, user_id: str) -> dict[str, Any]:
        """Counts per data type, effective retention, consents and last activity."""
        session_ids = select(InterviewSession.id).where(InterviewSession.user_id == user_id)

        async def count(model: Any, *criteria: Any) -> int:
            stmt = select(func.count()).select_from(model).where(*criteria)
            return (await session.execute(stmt)).scalar_one()

        async with self._session_factory() as session:
            data_types = {
                "audio": await count(AudioChunk, AudioChunk.session_id.in_(session_ids)),
                "transcriptions": await count(
                    TranscriptionResult, TranscriptionResult.session_id.in_(session_ids)
                ),
                "sessions": await count(InterviewSession, InterviewSession.user_id == user_id),
                "interactions": await count(Interaction, Interaction.session_id.in_(session_ids)),
                "practiceData": await count(PracticeSession, PracticeSession.user_id == user_id),
            }

        policies = {p.data_type: p.retention_days for p in await self._retention.get_retention_policies()}
        overrides = await self._privacy.find_user_privacy_settings(user_id)
        retention_periods = {
            "audio": _shorter(
                policies.get(DataDomain.AUDIO.value),
                overrides.audio_retention_days if overrides is not None else None,
            ),
            "transcriptions": _shorter(
                policies.get(DataDomain.TRANSCRIPTION.value),
                overrides.transcription_retention_days if overrides is not None else None,
            ),
            "sessions": policies.get(DataDomain.SESSION.value),
            "analytics": policies.get(DataDomain.ANALYTICS.value),
        }

        consents = await self._consents.get_user_consents(user_id)
        last_activity = await self._audit.get_last_activity(user_id)

        return {
            "dataTypes": data_types,
            "retentionPeriods": retention_periods,
            "consents": {c.consent_type.value: c.to_dict() for c in consents},
            "lastActivity": last_activity.isoformat() if last_activity else None,
        }


def _shorter(*days: int | None) -> int | None:
    """Effective retention when both the global and the user sweep apply."""
    known = [d for d in days if d is not None]
    return min(known) if known else None


# =============================================================================
# Polling Helper
# =============================================================================


async def poll_export_request(
    orchestrator: ErasureOrchestrator,
    request_id: str,
    timeout: float = 300.0,
    interval: float = 0.5,
    user_id: str | None = None,
) -> ExportRequestStatus:
    """
    Wait until a request reaches a terminal state.

    Raises:
        JobTimeoutError: Still pending/processing after ``timeout`` seconds
        NotFoundError: Unknown request
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        status = await orchestrator.get_export_request_status(request_id, user_id)
        if status.is_terminal:
            return status
        if loop.time() >= deadline:
            raise JobTimeoutError(
                f"Request {request_id} still {status.status.value} after {timeout:.0f}s"
            )
        await asyncio.sleep(interval)
