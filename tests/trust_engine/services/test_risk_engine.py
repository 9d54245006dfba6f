"""
Tests for rule-based risk scoring (trust_engine/services/risk_engine.py).

Tests:
- Each heuristic's trigger and score
- Unknown users and failing heuristics
- Pattern storage, flagging and the security audit of flagged patterns
- 7-day mean score and the block threshold (strictly above critical)
- Review queue
- Request guard
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from trust_engine.lib.config import RiskThresholds, TierLimits
from trust_engine.lib.exceptions import AccessBlockedError, NotFoundError
from trust_engine.models.audit import AuditAction, AuditEntry
from trust_engine.models.usage_pattern import PatternType, UsagePattern
from trust_engine.services.risk_engine import RiskAlert, RiskEngine, SubscriptionTier
from trust_engine.workflows.jobs import BackgroundJobs


@pytest.fixture()
def user_directory() -> AsyncMock:
    directory = AsyncMock()
    directory.get_subscription_tier.return_value = "free"
    directory.exists.return_value = True
    return directory


@pytest.fixture()
def session_store() -> AsyncMock:
    store = AsyncMock()
    store.count_sessions_since.return_value = 0
    store.audio_minutes_since.return_value = 0.0
    return store


@pytest.fixture()
def risk(session_factory, audit_log, user_directory, session_store, jobs, clock) -> RiskEngine:
    return RiskEngine(
        session_factory, audit_log, user_directory, session_store, jobs=jobs, clock=clock
    )


async def _patterns(session_factory, user_id: str = "user-1") -> list[UsagePattern]:
    async with session_factory() as session:
        stmt = select(UsagePattern).where(UsagePattern.user_id == user_id)
        return list((await session.execute(stmt)).scalars().all())


def _types(alerts: list[RiskAlert]) -> set[PatternType]:
    return {a.pattern_type for a in alerts}


# =============================================================================
# Tiers and limits
# =============================================================================


class TestTiers:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("pro", SubscriptionTier.PRO),
            ("enterprise", SubscriptionTier.ENTERPRISE),
            ("platinum", SubscriptionTier.FREE),
            (None, SubscriptionTier.FREE),
        ],
    )
    def test_resolve(self, value, expected) -> None:
        assert SubscriptionTier.resolve(value) == expected

    def test_limits_from_config(self, session_factory, audit_log, user_directory, session_store) -> None:
        custom = {"free": TierLimits(sessions_per_day=1, audio_minutes_per_day=1, api_calls_per_hour=1)}
        engine = RiskEngine(
            session_factory, audit_log, user_directory, session_store, tier_limits=custom
        )
        assert engine.limits_for("free").sessions_per_day == 1
        assert engine.limits_for("pro").sessions_per_day == 50


# =============================================================================
# Heuristics
# =============================================================================


class TestRatioHeuristics:
    """Session frequency, audio volume and API usage against tier ceilings."""

    @pytest.mark.asyncio
    async def test_quiet_user_has_no_alerts(self, risk: RiskEngine, session_factory) -> None:
        assert await risk.analyze_user_activity("user-1") == []
        assert await _patterns(session_factory) == []

    @pytest.mark.asyncio
    async def test_session_frequency(self, risk: RiskEngine, session_store) -> None:
        session_store.count_sessions_since.return_value = 4  # 80% of free limit 5

        (alert,) = await risk.analyze_user_activity("user-1")

        assert alert.pattern_type == PatternType.SESSION_FREQUENCY
        assert alert.risk_score == 80.0
        assert alert.data == {"sessionCount": 4, "timeWindow": "24h"}

    @pytest.mark.asyncio
    async def test_session_frequency_at_medium_does_not_trip(
        self, risk: RiskEngine, session_store
    ) -> None:
        session_store.count_sessions_since.return_value = 3  # exactly 60%
        assert await risk.analyze_user_activity("user-1") == []

    @pytest.mark.asyncio
    async def test_score_is_capped(self, risk: RiskEngine, session_store) -> None:
        session_store.count_sessions_since.return_value = 50
        (alert,) = await risk.analyze_user_activity("user-1")
        assert alert.risk_score == 100.0

    @pytest.mark.asyncio
    async def test_audio_volume_rounded(self, risk: RiskEngine, session_store) -> None:
        session_store.audio_minutes_since.return_value = 40.0  # 66.666..% of 60

        (alert,) = await risk.analyze_user_activity("user-1")

        assert alert.pattern_type == PatternType.AUDIO_VOLUME
        assert alert.risk_score == 66.67

    @pytest.mark.asyncio
    async def test_pro_tier_limits(self, risk: RiskEngine, user_directory, session_store) -> None:
        user_directory.get_subscription_tier.return_value = "pro"
        session_store.count_sessions_since.return_value = 4
        assert await risk.analyze_user_activity("user-1") == []

    @pytest.mark.asyncio
    async def test_api_usage_uses_high_threshold(self, risk: RiskEngine, add_rows, clock) -> None:
        recent = clock() - timedelta(minutes=30)
        await add_rows(
            *[
                AuditEntry(action=AuditAction.TRANSCRIPTION_START.value, user_id="user-1", created_at=recent)
                for _ in range(80)
            ],
            AuditEntry(action=AuditAction.LOGIN.value, user_id="user-1", created_at=recent),
        )
        assert await risk.analyze_user_activity("user-1") == []

        await add_rows(
            *[
                AuditEntry(action=AuditAction.RESPONSE_GENERATION.value, user_id="user-1", created_at=recent)
                for _ in range(5)
            ],
            AuditEntry(
                action=AuditAction.AUDIO_UPLOAD.value,
                user_id="user-1",
                created_at=clock() - timedelta(hours=2),
            ),
        )
        (alert,) = await risk.analyze_user_activity("user-1")
        assert alert.pattern_type == PatternType.API_USAGE
        assert alert.risk_score == 85.0


class TestDistinctValueHeuristics:
    @pytest.mark.asyncio
    async def test_location_anomaly(self, risk: RiskEngine, add_rows, clock) -> None:
        await add_rows(
            *[
                AuditEntry(
                    action="login",
                    user_id="user-1",
                    ip_address=f"198.51.100.{i}",
                    created_at=clock() - timedelta(days=1),
                )
                for i in range(11)
            ],
            AuditEntry(
                action="login",
                user_id="user-1",
                ip_address="203.0.113.1",
                created_at=clock() - timedelta(days=8),
            ),
        )

        (alert,) = await risk.analyze_user_activity("user-1")

        assert alert.pattern_type == PatternType.LOCATION_ANOMALY
        assert alert.risk_score == 88.0
        assert len(alert.data["ipAddresses"]) == 11

    @pytest.mark.asyncio
    async def test_ten_ips_is_fine(self, risk: RiskEngine, add_rows, clock) -> None:
        await add_rows(
            *[
                AuditEntry(action="login", user_id="user-1", ip_address=f"198.51.100.{i}", created_at=clock())
                for i in range(10)
            ]
        )
        assert await risk.analyze_user_activity("user-1") == []

    @pytest.mark.asyncio
    async def test_device_anomaly(self, risk: RiskEngine, add_rows, clock) -> None:
        await add_rows(
            *[
                AuditEntry(action="login", user_id="user-1", user_agent=f"Agent/{i}", created_at=clock())
                for i in range(6)
            ]
        )
        (alert,) = await risk.analyze_user_activity("user-1")
        assert alert.pattern_type == PatternType.DEVICE_ANOMALY
        assert alert.risk_score == 90.0


class TestTimeAnomaly:
    @pytest.mark.asyncio
    async def test_around_the_clock_activity(self, risk: RiskEngine, add_rows, clock) -> None:
        start = clock() - timedelta(days=2)
        await add_rows(
            *[
                AuditEntry(action="response_view", user_id="user-1", created_at=start + timedelta(hours=h, minutes=m))
                for h in range(21)
                for m in (0, 10, 20)
            ]
        )

        (alert,) = await risk.analyze_user_activity("user-1")

        assert alert.pattern_type == PatternType.TIME_ANOMALY
        assert alert.data["activeHours"] == 21
        assert alert.data["totalActions"] == 63
        assert alert.risk_score == 87.5

    @pytest.mark.asyncio
    async def test_needs_enough_actions(self, risk: RiskEngine, add_rows, clock) -> None:
        start = clock() - timedelta(days=2)
        await add_rows(
            *[
                AuditEntry(action="response_view", user_id="user-1", created_at=start + timedelta(hours=h))
                for h in range(22)
            ]
        )
        assert await risk.analyze_user_activity("user-1") == []


class TestAnalysisRobustness:
    @pytest.mark.asyncio
    async def test_unknown_user(self, risk: RiskEngine, user_directory, session_store) -> None:
        user_directory.get_subscription_tier.return_value = None
        user_directory.exists.return_value = False

        assert await risk.analyze_user_activity("ghost") == []
        session_store.count_sessions_since.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_heuristic_is_skipped(self, risk: RiskEngine, session_store) -> None:
        session_store.count_sessions_since.side_effect = RuntimeError("session service down")
        session_store.audio_minutes_since.return_value = 59.0

        alerts = await risk.analyze_user_activity("user-1")

        assert _types(alerts) == {PatternType.AUDIO_VOLUME}


# =============================================================================
# Storage and Flagging
# =============================================================================


class TestPatternStorage:
    @pytest.mark.asyncio
    async def test_unflagged_pattern(self, risk: RiskEngine, session_store, session_factory, audit_log) -> None:
        session_store.count_sessions_since.return_value = 4

        await risk.analyze_user_activity("user-1")

        (pattern,) = await _patterns(session_factory)
        assert pattern.pattern_type == "session_frequency"
        assert pattern.risk_score == 80.0
        assert pattern.flagged is False
        assert await audit_log.get_security_logs() == []

    @pytest.mark.asyncio
    async def test_flagged_pattern_is_security_event(
        self, risk: RiskEngine, session_store, session_factory, audit_log
    ) -> None:
        session_store.count_sessions_since.return_value = 6

        await risk.analyze_user_activity("user-1")

        (pattern,) = await _patterns(session_factory)
        assert pattern.flagged is True
        assert pattern.flagged_reason.startswith("Excessive session creation")
        (entry,) = await audit_log.get_security_logs()
        assert entry.action == "suspicious_activity"
        assert entry.details["patternType"] == "session_frequency"
        assert entry.details["riskScore"] == 100.0

    @pytest.mark.asyncio
    async def test_custom_thresholds(
        self, session_factory, audit_log, user_directory, session_store
    ) -> None:
        engine = RiskEngine(
            session_factory,
            audit_log,
            user_directory,
            session_store,
            thresholds=RiskThresholds(low=10, medium=20, high=30, critical=40),
        )
        session_store.count_sessions_since.return_value = 2  # 40%

        (alert,) = await engine.analyze_user_activity("user-1")
        assert alert.risk_score == 40.0
        (pattern,) = await _patterns(session_factory)
        assert pattern.flagged is True


# =============================================================================
# Scoring
# =============================================================================


class TestRiskScore:
    @pytest.mark.asyncio
    async def test_no_patterns_scores_zero(self, risk: RiskEngine) -> None:
        assert await risk.get_user_risk_score("user-1") == 0.0
        assert await risk.should_block_user("user-1") is False

    @pytest.mark.asyncio
    async def test_mean_over_trailing_week(self, risk: RiskEngine, add_rows, clock) -> None:
        await add_rows(
            UsagePattern(user_id="user-1", pattern_type="api_usage", risk_score=90.0, created_at=clock()),
            UsagePattern(user_id="user-1", pattern_type="api_usage", risk_score=70.0, created_at=clock()),
            UsagePattern(
                user_id="user-1",
                pattern_type="api_usage",
                risk_score=10.0,
                created_at=clock() - timedelta(days=8),
            ),
            UsagePattern(user_id="user-2", pattern_type="api_usage", risk_score=100.0, created_at=clock()),
        )
        assert await risk.get_user_risk_score("user-1") == 80.0

    @pytest.mark.asyncio
    async def test_mean_is_rounded(self, risk: RiskEngine, add_rows, clock) -> None:
        await add_rows(
            *[
                UsagePattern(user_id="user-1", pattern_type="api_usage", risk_score=s, created_at=clock())
                for s in (90.0, 90.0, 91.0)
            ]
        )
        assert await risk.get_user_risk_score("user-1") == 90.33

    @pytest.mark.asyncio
    async def test_exactly_critical_is_not_blocked(self, risk: RiskEngine, add_rows, clock) -> None:
        await add_rows(
            UsagePattern(user_id="user-1", pattern_type="api_usage", risk_score=95.0, created_at=clock()),
        )
        assert await risk.should_block_user("user-1") is False

    @pytest.mark.asyncio
    async def test_above_critical_is_blocked(self, risk: RiskEngine, add_rows, clock) -> None:
        await add_rows(
            UsagePattern(user_id="user-1", pattern_type="api_usage", risk_score=95.0, created_at=clock()),
            UsagePattern(user_id="user-1", pattern_type="device_anomaly", risk_score=96.0, created_at=clock()),
        )
        assert await risk.get_user_risk_score("user-1") == 95.5
        assert await risk.should_block_user("user-1") is True

    @pytest.mark.asyncio
    async def test_old_flags_age_out(self, risk: RiskEngine, add_rows, clock) -> None:
        await add_rows(
            UsagePattern(user_id="user-1", pattern_type="api_usage", risk_score=100.0, created_at=clock()),
        )
        assert await risk.should_block_user("user-1") is True
        clock.advance(days=7, seconds=1)
        assert await risk.should_block_user("user-1") is False


# =============================================================================
# Review Queue
# =============================================================================


class TestReviewQueue:
    @pytest.mark.asyncio
    async def test_flagged_users_ordering(self, risk: RiskEngine, add_rows, clock) -> None:
        await add_rows(
            UsagePattern(id="p-low", user_id="a", pattern_type="api_usage", risk_score=85.0, flagged=True),
            UsagePattern(id="p-high", user_id="b", pattern_type="api_usage", risk_score=99.0, flagged=True),
            UsagePattern(id="p-unflagged", user_id="c", pattern_type="api_usage", risk_score=50.0),
            UsagePattern(
                id="p-reviewed", user_id="d", pattern_type="api_usage", risk_score=100.0, flagged=True, reviewed=True
            ),
        )
        flagged = await risk.get_flagged_users()
        assert [p.id for p in flagged] == ["p-high", "p-low"]
        assert [p.id for p in await risk.get_flagged_users(limit=1)] == ["p-high"]

    @pytest.mark.asyncio
    async def test_mark_as_reviewed(self, risk: RiskEngine, add_rows, clock) -> None:
        await add_rows(
            UsagePattern(id="p1", user_id="a", pattern_type="api_usage", risk_score=90.0, flagged=True)
        )

        pattern = await risk.mark_as_reviewed("p1", "admin-7", notes="Load test account")

        assert pattern.reviewed is True
        assert pattern.reviewed_by == "admin-7"
        assert pattern.reviewed_at == clock()
        assert pattern.review_notes == "Load test account"
        assert await risk.get_flagged_users() == []

    @pytest.mark.asyncio
    async def test_mark_unknown_pattern(self, risk: RiskEngine) -> None:
        with pytest.raises(NotFoundError):
            await risk.mark_as_reviewed("missing", "admin-7")


# =============================================================================
# Request Guard
# =============================================================================


class TestGuardRequest:
    @pytest.mark.asyncio
    async def test_anonymous_request_passes(self, risk: RiskEngine, jobs: BackgroundJobs) -> None:
        await risk.guard_request(None, "203.0.113.5", "UA/1", "/health")
        assert jobs.pending == 0

    @pytest.mark.asyncio
    async def test_allowed_request_schedules_analysis(
        self, risk: RiskEngine, jobs: BackgroundJobs, session_store, session_factory
    ) -> None:
        session_store.count_sessions_since.return_value = 4

        await risk.guard_request("user-1", "203.0.113.5", "UA/1", "/sessions")
        assert await jobs.drain(timeout=5) is True

        assert len(await _patterns(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_blocked_user(self, risk: RiskEngine, add_rows, audit_log, jobs, clock) -> None:
        await add_rows(
            UsagePattern(user_id="user-1", pattern_type="api_usage", risk_score=99.0, created_at=clock())
        )

        with pytest.raises(AccessBlockedError):
            await risk.guard_request("user-1", "203.0.113.5", "UA/1", "/transcribe")

        (entry,) = await audit_log.get_security_logs()
        assert entry.action == "unauthorized_access"
        assert entry.details == {"reason": "High fraud risk score", "endpoint": "/transcribe"}
        assert entry.ip_address == "203.0.113.5"
        assert entry.user_agent == "UA/1"
        assert jobs.pending == 0

    @pytest.mark.asyncio
    async def test_evaluation_error_fails_open(self, risk: RiskEngine) -> None:
        with patch.object(RiskEngine, "should_block_user", side_effect=RuntimeError("db down")):
            await risk.guard_request("user-1", endpoint="/sessions")

    @pytest.mark.asyncio
    async def test_closed_job_set_does_not_break_request(
        self, risk: RiskEngine, jobs: BackgroundJobs
    ) -> None:
        await jobs.drain()
        await risk.guard_request("user-1", endpoint="/sessions")
        assert jobs.pending == 0
