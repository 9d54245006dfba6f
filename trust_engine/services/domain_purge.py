"""
Bulk deletion across coaching data domains.

DomainPurger is the one deletion primitive used by both the retention
sweep and GDPR erasure. It runs inside the caller's transaction, so every
caller gets all-or-nothing semantics, and it is parameterised by a
PurgeScope:

- cutoff-based   (retention sweep): rows older than ``cutoff``
- user-based     (GDPR erasure):    rows owned by ``user_id``
- both           (per-user retention setting)

Within a domain, dependent rows go before their parents (interactions and
metrics before sessions, questions and responses before practice
sessions). The user row itself is only removed for a full erasure
(DataCategory.ALL with a user scope) and always last.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import delete, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from trust_engine.lib.exceptions import NotFoundError, ValidationError
from trust_engine.lib.security import hash_uid
from trust_engine.models.coaching import (
    AudioChunk,
    Interaction,
    InterviewSession,
    PracticeAnalytics,
    PracticeQuestion,
    PracticeResponse,
    PracticeSession,
    SessionMetrics,
    TranscriptionCache,
    TranscriptionResult,
    User,
    UserProfile,
)
from trust_engine.models.consent import ConsentRecord
from trust_engine.models.encryption_key import EncryptionKeyRecord
from trust_engine.models.export_request import DataCategory
from trust_engine.models.retention import PrivacySetting
from trust_engine.models.usage_pattern import UsagePattern

logger = structlog.get_logger(__name__)

# Order in which domains are purged. The account row is handled after all of them.
PURGE_ORDER: tuple[DataCategory, ...] = (
    DataCategory.AUDIO,
    DataCategory.TRANSCRIPTIONS,
    DataCategory.SESSIONS,
    DataCategory.PRACTICE,
    DataCategory.PROFILE,
    DataCategory.PRIVACY,
    DataCategory.ANALYTICS,
)

# Domains that only make sense for one user.
USER_ONLY_CATEGORIES = frozenset({DataCategory.PROFILE, DataCategory.PRIVACY})


@dataclass(frozen=True)
class PurgeScope:
    """
    Which rows a purge may touch.

    Attributes:
        user_id: Restrict to rows owned by this user.
        cutoff: Restrict to rows created strictly before this instant.
    """

    user_id: str | None = None
    cutoff: datetime | None = None

    def __post_init__(self) -> None:
        if self.user_id is None and self.cutoff is None:
            raise ValidationError("A purge needs a user, a cutoff, or both")


@dataclass
class PurgeResult:
    """Rows deleted per table."""

    counts: dict[str, int] = field(default_factory=dict)

    def add(self, table: str, count: int) -> None:
        self.counts[table] = self.counts.get(table, 0) + count

    def count(self, *tables: str) -> int:
        return sum(self.counts.get(t, 0) for t in tables)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class DomainPurger:
    """Transactional bulk delete over data domains."""

    async def purge(
        self,
        session: AsyncSession,
        categories: Iterable[DataCategory | str],
        scope: PurgeScope,
    ) -> PurgeResult:
        """
        Delete the selected domains inside the caller's transaction.

        Args:
            session: Session with an open transaction
            categories: Domains to purge; DataCategory.ALL selects every domain
                and, for a user scope, the account row
            scope: Row selection

        Raises:
            ValidationError: A user-only domain was requested without a user
            NotFoundError: A full erasure found no account row to delete
        """
        requested = {DataCategory(c) for c in categories}
        full = DataCategory.ALL in requested
        selected = set(PURGE_ORDER) if full else requested
        if scope.user_id is None and selected & USER_ONLY_CATEGORIES:
            raise ValidationError("Profile and privacy data can only be purged per user")

        await self._lock_user(session, scope)

        result = PurgeResult()
        for category in PURGE_ORDER:
            if category in selected:
                step = getattr(self, f"_purge_{category.value}")
                await step(session, scope, result)

        if full and scope.user_id is not None and scope.cutoff is None:
            await self._purge_account(session, scope.user_id, result)

        logger.debug(
            "domain_purge",
            user_hash=hash_uid(scope.user_id) if scope.user_id else None,
            cutoff=scope.cutoff.isoformat() if scope.cutoff else None,
            counts=result.counts,
        )
        return result

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _lock_user(self, session: AsyncSession, scope: PurgeScope) -> None:
        if scope.user_id is None:
            return
        if session.get_bind().dialect.name == "postgresql":
            await session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": scope.user_id}
            )

    async def _delete(
        self, session: AsyncSession, model: Any, criteria: list[Any], result: PurgeResult
    ) -> None:
        stmt = delete(model).where(*criteria).execution_options(synchronize_session=False)
        deleted = (await session.execute(stmt)).rowcount or 0
        result.add(model.__tablename__, deleted)

    @staticmethod
    def _session_child_criteria(model: Any, scope: PurgeScope) -> list[Any]:
        """Rows keyed by interview session, filtered by their own age."""
        criteria: list[Any] = []
        if scope.user_id is not None:
            criteria.append(
                model.session_id.in_(
                    select(InterviewSession.id).where(InterviewSession.user_id == scope.user_id)
                )
            )
        if scope.cutoff is not None:
            criteria.append(model.created_at < scope.cutoff)
        return criteria

    @staticmethod
    def _owned_criteria(model: Any, scope: PurgeScope) -> list[Any]:
        """Rows with their own user_id column."""
        criteria: list[Any] = []
        if scope.user_id is not None:
            criteria.append(model.user_id == scope.user_id)
        if scope.cutoff is not None:
            criteria.append(model.created_at < scope.cutoff)
        return criteria

    # -------------------------------------------------------------------------
    # Domain Steps
    # -------------------------------------------------------------------------

    async def _purge_audio(
        self, session: AsyncSession, scope: PurgeScope, result: PurgeResult
    ) -> None:
        await self._delete(session, AudioChunk, self._session_child_criteria(AudioChunk, scope), result)

    async def _purge_transcriptions(
        self, session: AsyncSession, scope: PurgeScope, result: PurgeResult
    ) -> None:
        await self._delete(
            session,
            TranscriptionResult,
            self._session_child_criteria(TranscriptionResult, scope),
            result,
        )
        # The cache is not attributable to a user; only age-based sweeps touch it.
        if scope.user_id is None and scope.cutoff is not None:
            await self._delete(
                session, TranscriptionCache, [TranscriptionCache.created_at < scope.cutoff], result
            )

    async def _purge_sessions(
        self, session: AsyncSession, scope: PurgeScope, result: PurgeResult
    ) -> None:
        targets = select(InterviewSession.id).where(*self._owned_criteria(InterviewSession, scope))
        await self._delete(session, Interaction, [Interaction.session_id.in_(targets)], result)
        await self._delete(session, SessionMetrics, [SessionMetrics.session_id.in_(targets)], result)
        await self._delete(
            session,
            InterviewSession,
            self._owned_criteria(InterviewSession, scope),
            result,
        )

    async def _purge_practice(
        self, session: AsyncSession, scope: PurgeScope, result: PurgeResult
    ) -> None:
        targets = select(PracticeSession.id).where(*self._owned_criteria(PracticeSession, scope))
        await self._delete(session, PracticeResponse, [PracticeResponse.session_id.in_(targets)], result)
        await self._delete(session, PracticeQuestion, [PracticeQuestion.session_id.in_(targets)], result)
        await self._delete(
            session, PracticeAnalytics, self._owned_criteria(PracticeAnalytics, scope), result
        )
        await self._delete(
            session, PracticeSession, self._owned_criteria(PracticeSession, scope), result
        )

    async def _purge_profile(
        self, session: AsyncSession, scope: PurgeScope, result: PurgeResult
    ) -> None:
        await self._delete(session, UserProfile, [UserProfile.user_id == scope.user_id], result)

    async def _purge_privacy(
        self, session: AsyncSession, scope: PurgeScope, result: PurgeResult
    ) -> None:
        await self._delete(session, ConsentRecord, [ConsentRecord.user_id == scope.user_id], result)
        await self._delete(session, PrivacySetting, [PrivacySetting.user_id == scope.user_id], result)
        await self._delete(
            session, EncryptionKeyRecord, [EncryptionKeyRecord.user_id == scope.user_id], result
        )

    async def _purge_analytics(
        self, session: AsyncSession, scope: PurgeScope, result: PurgeResult
    ) -> None:
        await self._delete(
            session, PracticeAnalytics, self._owned_criteria(PracticeAnalytics, scope), result
        )
        await self._delete(session, UsagePattern, self._owned_criteria(UsagePattern, scope), result)

    async def _purge_account(self, session: AsyncSession, user_id: str, result: PurgeResult) -> None:
        before = result.count(User.__tablename__)
        await self._delete(session, User, [User.id == user_id], result)
        if result.count(User.__tablename__) == before:
            raise NotFoundError(f"User {hash_uid(user_id)} not found")
