"""
Rule-based abuse and fraud scoring.

RiskEngine runs six independent heuristics over a user's recent activity.
Each heuristic that trips is persisted as a UsagePattern; patterns scoring
above the "high" threshold are flagged for human review and additionally
recorded as a ``suspicious_activity`` security event.

| Heuristic        | Window | Trigger                               | Score             |
|------------------|--------|---------------------------------------|-------------------|
| session_frequency| 24h    | sessions / tier ceiling > medium      | min(100, ratio)   |
| audio_volume     | 24h    | minutes / tier ceiling > medium       | min(100, ratio)   |
| api_usage        | 1h     | calls / tier ceiling > high           | min(100, ratio)   |
| location_anomaly | 7d     | distinct IPs > 10                     | min(100, n * 8)   |
| device_anomaly   | 7d     | distinct user agents > 5              | min(100, n * 15)  |
| time_anomaly     | 7d     | active UTC hours > 20 and actions > 50| hours / 24 * 100  |

There is no stored aggregate score. ``get_user_risk_score`` averages the
patterns of the trailing seven days at query time, so old flags age out of
the window on their own.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trust_engine.infra.monitoring import record_risk_pattern
from trust_engine.lib.config import DEFAULT_TIER_LIMITS, RiskThresholds, TierLimits
from trust_engine.lib.exceptions import AccessBlockedError, NotFoundError, StorageError
from trust_engine.lib.security import hash_uid
from trust_engine.models.audit import API_CALL_ACTIONS, AuditAction, AuditEntry
from trust_engine.models.base import as_utc, utcnow
from trust_engine.models.usage_pattern import PatternType, UsagePattern
from trust_engine.services.audit_log import AuditLog
from trust_engine.services.collaborators import SessionStore, UserDirectory
from trust_engine.workflows.jobs import BackgroundJobs

logger = structlog.get_logger(__name__)


# =============================================================================
# Enums and Data Classes
# =============================================================================


class SubscriptionTier(StrEnum):
    """Subscription tiers with their own usage ceilings."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @classmethod
    def resolve(cls, value: str | None) -> SubscriptionTier:
        """Unknown or missing tiers are treated as free."""
        try:
            return cls(value) if value else cls.FREE
        except ValueError:
            return cls.FREE


@dataclass
class RiskAlert:
    """One tripped heuristic.

    Attributes:
        user_id: User the alert is about.
        pattern_type: Which heuristic tripped.
        risk_score: Score in [0, 100], rounded to 2 decimals.
        reason: Human-readable explanation.
        data: Evidence (counts, window, distinct values).
        timestamp: When the alert was produced.
    """

    user_id: str
    pattern_type: PatternType
    risk_score: float
    reason: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "patternType": self.pattern_type.value,
            "riskScore": self.risk_score,
            "reason": self.reason,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


def _normalise_score(score: float) -> float:
    return round(min(100.0, max(0.0, score)), 2)


# =============================================================================
# Risk Engine
# =============================================================================


class RiskEngine:
    """Heuristic risk scoring with a human review queue.

    Usage:
        engine = RiskEngine(session_factory, audit_log, user_directory, session_store)
        alerts = await engine.analyze_user_activity(user_id)
        if await engine.should_block_user(user_id):
            ...
    """

    # Distinct-value heuristics
    MAX_DISTINCT_IPS: int = 10
    IP_SCORE_PER_ADDRESS: int = 8
    MAX_DISTINCT_USER_AGENTS: int = 5
    USER_AGENT_SCORE_PER_AGENT: int = 15

    # Time-of-day heuristic
    MAX_ACTIVE_HOURS: int = 20
    MIN_ACTIONS_FOR_TIME_ANOMALY: int = 50

    # Windows
    DAY = timedelta(days=1)
    HOUR = timedelta(hours=1)
    WEEK = timedelta(days=7)

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit_log: AuditLog,
        user_directory: UserDirectory,
        session_store: SessionStore,
        thresholds: RiskThresholds | None = None,
        tier_limits: dict[str, TierLimits] | None = None,
        jobs: BackgroundJobs | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit_log
        self._users = user_directory
        self._sessions = session_store
        self._thresholds = thresholds or RiskThresholds()
        self._tier_limits = tier_limits or dict(DEFAULT_TIER_LIMITS)
        self._jobs = jobs or BackgroundJobs()
        self._clock = clock

    @property
    def thresholds(self) -> RiskThresholds:
        return self._thresholds

    def limits_for(self, tier: str | None) -> TierLimits:
        resolved = SubscriptionTier.resolve(tier)
        return self._tier_limits.get(resolved.value) or DEFAULT_TIER_LIMITS[resolved.value]

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    async def analyze_user_activity(self, user_id: str) -> list[RiskAlert]:
        """
        Run every heuristic for one user and persist the alerts.

        A heuristic that fails is logged and skipped; the others still run.

        Returns:
            Alerts produced by this run (empty for unknown users)
        """
        tier = await self._users.get_subscription_tier(user_id)
        if tier is None and not await self._users.exists(user_id):
            return []

        limits = self.limits_for(tier)
        now = self._clock()
        heuristics: list[tuple[PatternType, Callable[[], Any]]] = [
            (PatternType.SESSION_FREQUENCY, lambda: self._session_frequency(user_id, limits, now)),
            (PatternType.AUDIO_VOLUME, lambda: self._audio_volume(user_id, limits, now)),
            (PatternType.API_USAGE, lambda: self._api_usage(user_id, limits, now)),
            (PatternType.LOCATION_ANOMALY, lambda: self._location_anomaly(user_id, now)),
            (PatternType.DEVICE_ANOMALY, lambda: self._device_anomaly(user_id, now)),
            (PatternType.TIME_ANOMALY, lambda: self._time_anomaly(user_id, now)),
        ]

        alerts: list[RiskAlert] = []
        for pattern_type, run in heuristics:
            try:
                alert = await run()
            except Exception as e:
                logger.error(
                    "risk_heuristic_failed",
                    pattern_type=pattern_type.value,
                    user_hash=hash_uid(user_id),
                    error=str(e),
                )
                continue
            if alert is not None:
                alerts.append(alert)

        for alert in alerts:
            await self._store_pattern(alert)

        if alerts:
            logger.info(
                "risk_alerts",
                user_hash=hash_uid(user_id),
                patterns=[a.pattern_type.value for a in alerts],
            )
        return alerts

    def _ratio_alert(
        self,
        user_id: str,
        pattern_type: PatternType,
        observed: float,
        limit: int,
        trigger: float,
        reason: str,
        data: dict[str, Any],
        now: datetime,
    ) -> RiskAlert | None:
        score = min(100.0, observed / limit * 100) if limit > 0 else 100.0
        if score <= trigger:
            return None
        return RiskAlert(
            user_id=user_id,
            pattern_type=pattern_type,
            risk_score=_normalise_score(score),
            reason=reason,
            data=data,
            timestamp=now,
        )

    async def _session_frequency(
        self, user_id: str, limits: TierLimits, now: datetime
    ) -> RiskAlert | None:
        count = await self._sessions.count_sessions_since(user_id, now - self.DAY)
        return self._ratio_alert(
            user_id,
            PatternType.SESSION_FREQUENCY,
            count,
            limits.sessions_per_day,
            self._thresholds.medium,
            f"Excessive session creation: {count} sessions in 24h (limit: {limits.sessions_per_day})",
            {"sessionCount": count, "timeWindow": "24h"},
            now,
        )

    async def _audio_volume(
        self, user_id: str, limits: TierLimits, now: datetime
    ) -> RiskAlert | None:
        minutes = await self._sessions.audio_minutes_since(user_id, now - self.DAY)
        return self._ratio_alert(
            user_id,
            PatternType.AUDIO_VOLUME,
            minutes,
            limits.audio_minutes_per_day,
            self._thresholds.medium,
            f"Excessive audio usage: {round(minutes)} minutes in 24h "
            f"(limit: {limits.audio_minutes_per_day})",
            {"audioMinutes": round(minutes), "timeWindow": "24h"},
            now,
        )

    async def _api_usage(self, user_id: str, limits: TierLimits, now: datetime) -> RiskAlert | None:
        stmt = (
            select(func.count())
            .select_from(AuditEntry)
            .where(
                AuditEntry.user_id == user_id,
                AuditEntry.created_at >= now - self.HOUR,
                AuditEntry.action.in_([a.value for a in API_CALL_ACTIONS]),
            )
        )
        async with self._session_factory() as session:
            calls = (await session.execute(stmt)).scalar_one()
        return self._ratio_alert(
            user_id,
            PatternType.API_USAGE,
            calls,
            limits.api_calls_per_hour,
            self._thresholds.high,
            f"Excessive API usage: {calls} calls in 1h (limit: {limits.api_calls_per_hour})",
            {"apiCalls": calls, "timeWindow": "1h"},
            now,
        )

    async def _distinct_values(self, user_id: str, column: Any, since: datetime) -> list[str]:
        stmt = (
            select(column)
            .where(AuditEntry.user_id == user_id, AuditEntry.created_at >= since, column.is_not(None))
            .distinct()
        )
        async with self._session_factory() as session:
            return sorted((await session.execute(stmt)).scalars().all())

    async def _location_anomaly(self, user_id: str, now: datetime) -> RiskAlert | None:
        ips = await self._distinct_values(user_id, AuditEntry.ip_address, now - self.WEEK)
        if len(ips) <= self.MAX_DISTINCT_IPS:
            return None
        return RiskAlert(
            user_id=user_id,
            pattern_type=PatternType.LOCATION_ANOMALY,
            risk_score=_normalise_score(len(ips) * self.IP_SCORE_PER_ADDRESS),
            reason=f"Multiple IP addresses detected: {len(ips)} unique IPs in 7 days",
            data={"ipAddresses": ips, "timeWindow": "7d"},
            timestamp=now,
        )

    async def _device_anomaly(self, user_id: str, now: datetime) -> RiskAlert | None:
        agents = await self._distinct_values(user_id, AuditEntry.user_agent, now - self.WEEK)
        if len(agents) <= self.MAX_DISTINCT_USER_AGENTS:
            return None
        return RiskAlert(
            user_id=user_id,
            pattern_type=PatternType.DEVICE_ANOMALY,
            risk_score=_normalise_score(len(agents) * self.USER_AGENT_SCORE_PER_AGENT),
            reason=f"Multiple devices detected: {len(agents)} unique user agents in 7 days",
            data={"userAgents": agents, "timeWindow": "7d"},
            timestamp=now,
        )

    async def _time_anomaly(self, user_id: str, now: datetime) -> RiskAlert | None:
        stmt = select(AuditEntry.created_at).where(
            AuditEntry.user_id == user_id, AuditEntry.created_at >= now - self.WEEK
        )
        async with self._session_factory() as session:
            timestamps = (await session.execute(stmt)).scalars().all()

        active_hours = len({as_utc(ts).hour for ts in timestamps})
        total = len(timestamps)
        if active_hours <= self.MAX_ACTIVE_HOURS or total <= self.MIN_ACTIONS_FOR_TIME_ANOMALY:
            return None
        return RiskAlert(
            user_id=user_id,
            pattern_type=PatternType.TIME_ANOMALY,
            risk_score=_normalise_score(active_hours / 24 * 100),
            reason=f"Unusual activity pattern: active {active_hours}/24 hours with {total} actions",
            data={"activeHours": active_hours, "totalActions": total, "timeWindow": "7d"},
            timestamp=now,
        )

    async def _store_pattern(self, alert: RiskAlert) -> None:
        """Persist one alert. Storage failures are logged, not raised."""
        flagged = alert.risk_score > self._thresholds.high
        try:
            async with self._session_factory() as session, session.begin():
                session.add(
                    UsagePattern(
                        user_id=alert.user_id,
                        pattern_type=alert.pattern_type.value,
                        pattern_data=alert.data,
                        risk_score=alert.risk_score,
                        flagged=flagged,
                        flagged_reason=alert.reason,
                        created_at=alert.timestamp,
                    )
                )
        except sa_exc.SQLAlchemyError as e:
            logger.error(
                "usage_pattern_store_failed",
                user_hash=hash_uid(alert.user_id),
                pattern_type=alert.pattern_type.value,
                error=str(e),
            )
            return

        record_risk_pattern(alert.pattern_type.value, flagged)
        if flagged:
            await self._audit.log_security(
                AuditAction.SUSPICIOUS_ACTIVITY,
                alert.user_id,
                {
                    "patternType": alert.pattern_type.value,
                    "riskScore": alert.risk_score,
                    "reason": alert.reason,
                },
            )

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    async def get_user_risk_score(self, user_id: str) -> float:
        """Mean pattern score over the last 7 days, 0 when there is none."""
        stmt = select(func.avg(UsagePattern.risk_score)).where(
            UsagePattern.user_id == user_id,
            UsagePattern.created_at >= self._clock() - self.WEEK,
        )
        try:
            async with self._session_factory() as session:
                mean = await session.scalar(stmt)
        except sa_exc.SQLAlchemyError as e:
            logger.error("risk_score_query_failed", user_hash=hash_uid(user_id), error=str(e))
            raise StorageError("Risk score lookup failed") from e
        return round(float(mean), 2) if mean is not None else 0.0

    async def should_block_user(self, user_id: str) -> bool:
        return await self.get_user_risk_score(user_id) > self._thresholds.critical

    # -------------------------------------------------------------------------
    # Review Queue
    # -------------------------------------------------------------------------

    async def get_flagged_users(self, limit: int = 50) -> list[UsagePattern]:
        """Flagged, unreviewed patterns, highest score first."""
        stmt = (
            select(UsagePattern)
            .where(UsagePattern.flagged.is_(True), UsagePattern.reviewed.is_(False))
            .order_by(UsagePattern.risk_score.desc(), UsagePattern.created_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def mark_as_reviewed(
        self, pattern_id: str, reviewed_by: str, notes: str | None = None
    ) -> UsagePattern:
        """
        Raises:
            NotFoundError: No pattern with this id
        """
        async with self._session_factory() as session, session.begin():
            pattern = await session.get(UsagePattern, pattern_id)
            if pattern is None:
                raise NotFoundError(f"Usage pattern {pattern_id} not found")
            pattern.reviewed = True
            pattern.reviewed_by = reviewed_by
            pattern.reviewed_at = self._clock()
            pattern.review_notes = notes

        logger.info("usage_pattern_reviewed", pattern_id=pattern_id, reviewed_by=reviewed_by)
        return pattern

    # -------------------------------------------------------------------------
    # Request Guard
    # -------------------------------------------------------------------------

    async def guard_request(
        self,
        user_id: str | None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        endpoint: str | None = None,
    ) -> None:
        """
        Admit or reject one authenticated request.

        Blocked users get an ``unauthorized_access`` audit entry and an
        AccessBlockedError. Everyone else passes, with a fresh analysis
        scheduled in the background. Errors inside risk evaluation let the
        request through.

        Raises:
            AccessBlockedError: The user's risk score is above critical
        """
        if user_id is None:
            return

        try:
            blocked = await self.should_block_user(user_id)
        except Exception as e:
            logger.error("risk_guard_failed", user_hash=hash_uid(user_id), error=str(e))
            return

        if blocked:
            await self._audit.log_security(
                AuditAction.UNAUTHORIZED_ACCESS,
                user_id,
                {"reason": "High fraud risk score", "endpoint": endpoint},
                ip_address,
                user_agent,
            )
            logger.warning("risk_guard_blocked", user_hash=hash_uid(user_id), endpoint=endpoint)
            raise AccessBlockedError(f"User {hash_uid(user_id)} blocked by risk score")

        try:
            self._jobs.spawn(
                self.analyze_user_activity(user_id), name=f"risk-analysis:{hash_uid(user_id)}"
            )
        except RuntimeError as e:
            logger.warning("risk_analysis_not_scheduled", user_hash=hash_uid(user_id), error=str(e))
