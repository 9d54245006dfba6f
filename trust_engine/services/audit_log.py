"""
Append-only audit trail for the Trust & Compliance Engine.

AuditLog writes one AuditEntry per security-relevant action. Writing is
fail-open: a failed audit write is logged and counted but never raised,
so the business operation that triggered it still succeeds.

On the hot path events go through AuditDispatcher, a bounded queue with a
single background consumer. Emitting never blocks; if the queue is full
the event is dropped with a warning and a metric. ``stop()`` drains the
queue on shutdown. Without a running dispatcher, events are written inline.

Usage:
    audit = AuditLog(session_factory)
    dispatcher = AuditDispatcher(audit, maxsize=1000)
    dispatcher.start()

    await audit.log_privacy(AuditAction.CONSENT_GRANT, user_id, {"consentType": "analytics"})

    await dispatcher.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, func, or_, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trust_engine.infra.monitoring import record_audit_write, update_audit_queue_depth
from trust_engine.lib.exceptions import StorageError
from trust_engine.lib.security import hash_uid
from trust_engine.models.audit import SECURITY_ACTIONS, AuditAction, AuditEntry
from trust_engine.models.base import utcnow

logger = structlog.get_logger(__name__)


# =============================================================================
# Audit Event
# =============================================================================


@dataclass(frozen=True)
class AuditEvent:
    """One event to append to the audit trail."""

    action: AuditAction
    user_id: str | None = None
    session_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    success: bool = True
    error_message: str | None = None

    def to_entry(self) -> AuditEntry:
        return AuditEntry(
            user_id=self.user_id,
            session_id=self.session_id,
            action=AuditAction(self.action).value,
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            details=self.details or None,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            success=self.success,
            error_message=self.error_message,
        )


# =============================================================================
# Audit Log
# =============================================================================


class AuditLog:
    """
    Fail-open audit writer and audit trail queries.

    Attributes:
        _session_factory: Async session factory; every write uses its own session.
        _dispatcher: Optional background dispatcher used by :meth:`submit`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._dispatcher: AuditDispatcher | None = None

    def attach_dispatcher(self, dispatcher: AuditDispatcher | None) -> None:
        self._dispatcher = dispatcher

    async def log(self, event: AuditEvent) -> None:
        """Append one entry. Never raises."""
        try:
            entry = event.to_entry()
            entry.created_at = self._clock()
            async with self._session_factory() as session, session.begin():
                session.add(entry)
        except Exception as e:
            record_audit_write("failure")
            logger.error(
                "audit_write_failed",
                action=str(event.action),
                user_hash=hash_uid(event.user_id) if event.user_id else None,
                error=str(e),
            )
            return

        record_audit_write("success")
        if event.success:
            logger.info("audit", action=str(event.action), user_hash=hash_uid(event.user_id))
        else:
            logger.warning(
                "audit",
                action=str(event.action),
                user_hash=hash_uid(event.user_id),
                error=event.error_message,
            )

    async def submit(self, event: AuditEvent) -> None:
        """Hand the event to the dispatcher when one is running, otherwise write inline."""
        if self._dispatcher is not None and self._dispatcher.running:
            self._dispatcher.emit(event)
        else:
            await self.log(event)

    # -------------------------------------------------------------------------
    # Domain Wrappers
    # -------------------------------------------------------------------------

    async def log_auth(
        self,
        action: AuditAction,
        user_id: str,
        success: bool,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        await self.submit(
            AuditEvent(
                action=action,
                user_id=user_id,
                resource_type="user",
                resource_id=user_id,
                details=details or {},
                ip_address=ip_address,
                user_agent=user_agent,
                success=success,
            )
        )

    async def log_audio(
        self,
        action: AuditAction,
        user_id: str,
        session_id: str | None = None,
        audio_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        await self.submit(
            AuditEvent(
                action=action,
                user_id=user_id,
                session_id=session_id,
                resource_type="audio",
                resource_id=audio_id,
                details=details or {},
            )
        )

    async def log_transcription(
        self,
        action: AuditAction,
        user_id: str,
        session_id: str | None = None,
        transcription_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        await self.submit(
            AuditEvent(
                action=action,
                user_id=user_id,
                session_id=session_id,
                resource_type="transcription",
                resource_id=transcription_id,
                details=details or {},
            )
        )

    async def log_session(
        self,
        action: AuditAction,
        user_id: str,
        session_id: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        await self.submit(
            AuditEvent(
                action=action,
                user_id=user_id,
                session_id=session_id,
                resource_type="session",
                resource_id=session_id,
                details=details or {},
            )
        )

    async def log_privacy(
        self,
        action: AuditAction,
        user_id: str,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        await self.submit(
            AuditEvent(
                action=action,
                user_id=user_id,
                resource_type="privacy",
                resource_id=user_id,
                details=details or {},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )

    async def log_data_management(
        self,
        action: AuditAction,
        user_id: str | None,
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
        resource_type: str = "data_request",
    ) -> None:
        await self.submit(
            AuditEvent(
                action=action,
                user_id=user_id,
                resource_type=resource_type,
                resource_id=request_id,
                details=details or {},
            )
        )

    async def log_security(
        self,
        action: AuditAction,
        user_id: str | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Security events are recorded as failures."""
        await self.submit(
            AuditEvent(
                action=action,
                user_id=user_id,
                resource_type="security",
                details=details or {},
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
            )
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def _fetch(self, stmt: Any) -> list[AuditEntry]:
        try:
            async with self._session_factory() as session:
                return list((await session.execute(stmt)).scalars().all())
        except sa_exc.SQLAlchemyError as e:
            logger.error("audit_query_failed", error=str(e))
            raise StorageError("Audit query failed") from e

    async def get_user_audit_logs(
        self, user_id: str, limit: int = 100, offset: int = 0
    ) -> list[AuditEntry]:
        """Entries of one user, newest first."""
        stmt = (
            select(AuditEntry)
            .where(AuditEntry.user_id == user_id)
            .order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return await self._fetch(stmt)

    async def get_session_audit_logs(
        self, session_id: str, limit: int = 100, offset: int = 0
    ) -> list[AuditEntry]:
        """Entries of one interview session, newest first."""
        stmt = (
            select(AuditEntry)
            .where(AuditEntry.session_id == session_id)
            .order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return await self._fetch(stmt)

    async def get_security_logs(self, limit: int = 100, offset: int = 0) -> list[AuditEntry]:
        """Security actions plus every failed action, newest first."""
        stmt = (
            select(AuditEntry)
            .where(
                or_(
                    AuditEntry.action.in_([a.value for a in SECURITY_ACTIONS]),
                    AuditEntry.success.is_(False),
                )
            )
            .order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return await self._fetch(stmt)

    async def find_entries(self, action: AuditAction, since: datetime) -> list[AuditEntry]:
        stmt = (
            select(AuditEntry)
            .where(AuditEntry.action == AuditAction(action).value, AuditEntry.created_at >= since)
            .order_by(AuditEntry.created_at.desc())
        )
        return await self._fetch(stmt)

    async def get_last_activity(self, user_id: str) -> datetime | None:
        try:
            async with self._session_factory() as session:
                return await session.scalar(
                    select(func.max(AuditEntry.created_at)).where(AuditEntry.user_id == user_id)
                )
        except sa_exc.SQLAlchemyError as e:
            logger.error("audit_query_failed", error=str(e))
            raise StorageError("Audit query failed") from e

    async def cleanup_old_logs(self, days_to_keep: int = 365) -> int:
        """
        Delete entries older than ``now - days_to_keep``.

        Returns:
            Number of entries deleted

        Raises:
            StorageError: The delete failed
        """
        cutoff = self._clock() - timedelta(days=days_to_keep)
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    delete(AuditEntry)
                    .where(AuditEntry.created_at < cutoff)
                    .execution_options(synchronize_session=False)
                )
        except sa_exc.SQLAlchemyError as e:
            logger.error("audit_cleanup_failed", error=str(e))
            raise StorageError("Audit cleanup failed") from e

        deleted = result.rowcount or 0
        logger.info("audit_cleanup", deleted=deleted, days_to_keep=days_to_keep)
        return deleted


# =============================================================================
# Audit Dispatcher
# =============================================================================


class AuditDispatcher:
    """
    Bounded queue between hot-path callers and the audit table.

    Usage:
        dispatcher = AuditDispatcher(audit_log, maxsize=1000)
        dispatcher.start()          # inside a running loop
        dispatcher.emit(event)      # never blocks
        await dispatcher.flush()    # wait until everything queued is written
        await dispatcher.stop()     # drain, then cancel the consumer
    """

    def __init__(self, audit_log: AuditLog, maxsize: int = 1000) -> None:
        self._audit_log = audit_log
        self._queue: asyncio.Queue[AuditEvent] = asyncio.Queue(maxsize=maxsize)
        self._consumer: asyncio.Task[None] | None = None
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.running:
            return
        self._consumer = asyncio.create_task(self._consume(), name="audit-dispatcher")
        self._audit_log.attach_dispatcher(self)
        logger.info("audit_dispatcher_started", maxsize=self._queue.maxsize)

    def emit(self, event: AuditEvent) -> bool:
        """Queue an event. Returns False if it was dropped because the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            record_audit_write("dropped")
            logger.warning(
                "audit_event_dropped",
                action=str(event.action),
                user_hash=hash_uid(event.user_id) if event.user_id else None,
                dropped_total=self.dropped,
            )
            return False
        update_audit_queue_depth(self._queue.qsize())
        return True

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._audit_log.log(event)
            finally:
                self._queue.task_done()
                update_audit_queue_depth(self._queue.qsize())

    async def flush(self) -> None:
        await self._queue.join()

    async def stop(self, timeout: float | None = 10.0) -> None:
        """Drain pending events (bounded by ``timeout``) and stop the consumer."""
        if self._consumer is None:
            return
        self._audit_log.attach_dispatcher(None)
        try:
            await asyncio.wait_for(self.flush(), timeout=timeout)
        except TimeoutError:
            logger.warning("audit_dispatcher_drain_timeout", pending=self._queue.qsize())
        self._consumer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._consumer
        self._consumer = None
        logger.info("audit_dispatcher_stopped", dropped_total=self.dropped)
