"""
Tests for the audit trail (trust_engine/services/audit_log.py).

Tests:
- Fail-open writes
- Domain wrappers and their resource types
- Query ordering (newest first) and security log selection
- Age-based cleanup
- AuditDispatcher back-pressure, flush and shutdown drain
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from trust_engine.models.audit import AuditAction
from trust_engine.services.audit_log import AuditDispatcher, AuditEvent, AuditLog

# =============================================================================
# Writing
# =============================================================================


class TestAuditWrite:
    """log / submit"""

    @pytest.mark.asyncio
    async def test_log_persists_entry(self, audit_log: AuditLog, clock) -> None:
        await audit_log.log(
            AuditEvent(
                action=AuditAction.LOGIN,
                user_id="user-1",
                details={"method": "password"},
                ip_address="203.0.113.7",
            )
        )

        (entry,) = await audit_log.get_user_audit_logs("user-1")
        assert entry.action == "login"
        assert entry.details == {"method": "password"}
        assert entry.ip_address == "203.0.113.7"
        assert entry.success is True
        assert entry.created_at == clock()

    @pytest.mark.asyncio
    async def test_write_failure_does_not_raise(self, clock) -> None:
        broken_factory = MagicMock(side_effect=RuntimeError("database unreachable"))
        audit = AuditLog(broken_factory, clock=clock)

        await audit.log(AuditEvent(action=AuditAction.LOGIN, user_id="user-1"))
        await audit.log_security(AuditAction.SUSPICIOUS_ACTIVITY, "user-1")

    @pytest.mark.asyncio
    async def test_unknown_action_does_not_raise(self, audit_log: AuditLog) -> None:
        await audit_log.log(AuditEvent(action="not_an_action", user_id="user-1"))  # type: ignore[arg-type]
        assert await audit_log.get_user_audit_logs("user-1") == []

    @pytest.mark.asyncio
    async def test_empty_details_stored_as_null(self, audit_log: AuditLog) -> None:
        await audit_log.log(AuditEvent(action=AuditAction.LOGOUT, user_id="user-1"))
        (entry,) = await audit_log.get_user_audit_logs("user-1")
        assert entry.details is None


class TestDomainWrappers:
    """Resource typing of the wrappers."""

    @pytest.mark.asyncio
    async def test_resource_types(self, audit_log: AuditLog, clock) -> None:
        await audit_log.log_auth(AuditAction.LOGIN, "user-1", success=False)
        clock.advance(seconds=1)
        await audit_log.log_audio(AuditAction.AUDIO_UPLOAD, "user-1", "sess-1", "chunk-1")
        clock.advance(seconds=1)
        await audit_log.log_transcription(AuditAction.TRANSCRIPTION_VIEW, "user-1", "sess-1", "tr-1")
        clock.advance(seconds=1)
        await audit_log.log_session(AuditAction.SESSION_START, "user-1", "sess-1")
        clock.advance(seconds=1)
        await audit_log.log_privacy(AuditAction.CONSENT_GRANT, "user-1", {"consentType": "analytics"})
        clock.advance(seconds=1)
        await audit_log.log_data_management(AuditAction.DATA_EXPORT_REQUEST, "user-1", "req-1")

        entries = await audit_log.get_user_audit_logs("user-1")
        assert [(e.action, e.resource_type, e.resource_id) for e in entries] == [
            ("data_export_request", "data_request", "req-1"),
            ("consent_grant", "privacy", "user-1"),
            ("session_start", "session", "sess-1"),
            ("transcription_view", "transcription", "tr-1"),
            ("audio_upload", "audio", "chunk-1"),
            ("login", "user", "user-1"),
        ]
        assert entries[-1].success is False

    @pytest.mark.asyncio
    async def test_security_events_are_failures(self, audit_log: AuditLog) -> None:
        await audit_log.log_security(
            AuditAction.RATE_LIMIT_EXCEEDED, "user-1", {"endpoint": "/transcribe"}, "198.51.100.1"
        )
        (entry,) = await audit_log.get_user_audit_logs("user-1")
        assert entry.success is False
        assert entry.resource_type == "security"


# =============================================================================
# Queries
# =============================================================================


class TestQueries:
    """Ordering and filters."""

    @pytest.mark.asyncio
    async def test_user_logs_newest_first_with_paging(self, audit_log: AuditLog, clock) -> None:
        for action in (AuditAction.LOGIN, AuditAction.SESSION_CREATE, AuditAction.LOGOUT):
            await audit_log.log(AuditEvent(action=action, user_id="user-1"))
            clock.advance(minutes=1)

        entries = await audit_log.get_user_audit_logs("user-1")
        assert [e.action for e in entries] == ["logout", "session_create", "login"]

        page = await audit_log.get_user_audit_logs("user-1", limit=1, offset=1)
        assert [e.action for e in page] == ["session_create"]

    @pytest.mark.asyncio
    async def test_session_logs(self, audit_log: AuditLog) -> None:
        await audit_log.log_session(AuditAction.SESSION_START, "user-1", "sess-1")
        await audit_log.log_session(AuditAction.SESSION_START, "user-1", "sess-2")
        entries = await audit_log.get_session_audit_logs("sess-1")
        assert [e.session_id for e in entries] == ["sess-1"]

    @pytest.mark.asyncio
    async def test_security_logs_include_failures(self, audit_log: AuditLog, clock) -> None:
        await audit_log.log_auth(AuditAction.LOGIN, "user-1", success=True)
        clock.advance(seconds=1)
        await audit_log.log_auth(AuditAction.LOGIN, "user-2", success=False)
        clock.advance(seconds=1)
        await audit_log.log_security(AuditAction.UNAUTHORIZED_ACCESS, "user-3")

        entries = await audit_log.get_security_logs()
        assert [e.user_id for e in entries] == ["user-3", "user-2"]

    @pytest.mark.asyncio
    async def test_find_entries_since(self, audit_log: AuditLog, clock) -> None:
        await audit_log.log_audio(AuditAction.AUDIO_UPLOAD, "user-1")
        start = clock.advance(hours=2)
        await audit_log.log_audio(AuditAction.AUDIO_UPLOAD, "user-1")
        await audit_log.log_audio(AuditAction.AUDIO_DELETE, "user-1")

        entries = await audit_log.find_entries(AuditAction.AUDIO_UPLOAD, start)
        assert len(entries) == 1

    @pytest.mark.asyncio
    async def test_last_activity(self, audit_log: AuditLog, clock) -> None:
        assert await audit_log.get_last_activity("user-1") is None
        await audit_log.log_auth(AuditAction.LOGIN, "user-1", success=True)
        latest = clock.advance(hours=3)
        await audit_log.log_auth(AuditAction.LOGOUT, "user-1", success=True)

        assert await audit_log.get_last_activity("user-1") == latest


class TestCleanup:
    @pytest.mark.asyncio
    async def test_cleanup_old_logs(self, audit_log: AuditLog, clock) -> None:
        await audit_log.log_auth(AuditAction.LOGIN, "user-1", success=True)
        clock.advance(days=400)
        await audit_log.log_auth(AuditAction.LOGIN, "user-1", success=True)

        assert await audit_log.cleanup_old_logs(365) == 1
        assert len(await audit_log.get_user_audit_logs("user-1")) == 1

    @pytest.mark.asyncio
    async def test_cleanup_nothing_to_delete(self, audit_log: AuditLog) -> None:
        await audit_log.log_auth(AuditAction.LOGIN, "user-1", success=True)
        assert await audit_log.cleanup_old_logs(30) == 0


# =============================================================================
# Dispatcher
# =============================================================================


class TestAuditDispatcher:
    """Bounded, non-blocking queue in front of the audit table."""

    def test_full_queue_drops(self, audit_log: AuditLog) -> None:
        dispatcher = AuditDispatcher(audit_log, maxsize=1)
        event = AuditEvent(action=AuditAction.LOGIN, user_id="user-1")

        assert dispatcher.emit(event) is True
        assert dispatcher.emit(event) is False
        assert dispatcher.dropped == 1
        assert dispatcher.depth == 1

    @pytest.mark.asyncio
    async def test_submit_routes_through_running_dispatcher(self, audit_log: AuditLog) -> None:
        dispatcher = AuditDispatcher(audit_log, maxsize=10)
        dispatcher.start()
        try:
            assert dispatcher.running
            await audit_log.log_privacy(AuditAction.CONSENT_REVOKE, "user-1")
            await dispatcher.flush()
            assert len(await audit_log.get_user_audit_logs("user-1")) == 1
        finally:
            await dispatcher.stop()

        assert not dispatcher.running

    @pytest.mark.asyncio
    async def test_stop_drains_pending_events(self, audit_log: AuditLog) -> None:
        dispatcher = AuditDispatcher(audit_log, maxsize=10)
        dispatcher.start()
        for _ in range(5):
            dispatcher.emit(AuditEvent(action=AuditAction.RESPONSE_VIEW, user_id="user-1"))

        await dispatcher.stop(timeout=5)

        assert len(await audit_log.get_user_audit_logs("user-1")) == 5

    @pytest.mark.asyncio
    async def test_inline_write_after_stop(self, audit_log: AuditLog) -> None:
        dispatcher = AuditDispatcher(audit_log)
        dispatcher.start()
        await dispatcher.stop()

        await audit_log.log_auth(AuditAction.LOGIN, "user-1", success=True)
        assert len(await audit_log.get_user_audit_logs("user-1")) == 1

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, audit_log: AuditLog) -> None:
        await AuditDispatcher(audit_log).stop()
