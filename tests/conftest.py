"""
Shared test fixtures for the Trust & Compliance Engine.

This module provides common fixtures used across all test modules:
- Environment setup (dev mode)
- File-backed temporary SQLite database (aiosqlite) per test
- AuditLog, KeyManager and the other services wired to that database
- A controllable clock
- Helpers to seed users and coaching-domain rows

Usage:
    All fixtures are automatically available to any test in the tests/ directory.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

# ---------------------------------------------------------------------------
# 1. Environment setup -- must run before any application imports
# ---------------------------------------------------------------------------

os.environ.setdefault("TRUST_DEV_MODE", "1")

# ---------------------------------------------------------------------------
# Application imports (after env vars are set)
# ---------------------------------------------------------------------------

from trust_engine.core.engine import TrustEngine, build_trust_engine  # noqa: E402
from trust_engine.infra.database import create_session_factory, init_models  # noqa: E402
from trust_engine.lib.config import ComplianceSettings  # noqa: E402
from trust_engine.lib.encryption import KeyManager  # noqa: E402
from trust_engine.lib.locks import DataLockManager  # noqa: E402
from trust_engine.models.coaching import (  # noqa: E402
    AudioChunk,
    InterviewSession,
    TranscriptionResult,
    User,
)
from trust_engine.services.audit_log import AuditLog  # noqa: E402
from trust_engine.services.collaborators import LocalFileStore  # noqa: E402
from trust_engine.services.privacy_preferences import PrivacyPreferences  # noqa: E402
from trust_engine.workflows.jobs import BackgroundJobs  # noqa: E402

TEST_MASTER_KEY = b"test-master-key-for-trust-engine"  # exactly 32 bytes
FAST_KDF_ITERATIONS = 1_000


# ---------------------------------------------------------------------------
# 2. Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# 3. Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """
    Async engine over a fresh SQLite file in ``tmp_path``.

    A file (not ``:memory:``) is used so that every session of a test sees
    the same database.
    """
    db_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'trust.db'}", connect_args={"timeout": 30}
    )
    await init_models(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


# ---------------------------------------------------------------------------
# 4. Services
# ---------------------------------------------------------------------------


@pytest.fixture()
def audit_log(session_factory: async_sessionmaker[AsyncSession], clock: FakeClock) -> AuditLog:
    return AuditLog(session_factory, clock=clock)


@pytest.fixture()
def key_manager(session_factory: async_sessionmaker[AsyncSession]) -> KeyManager:
    """KeyManager with the fixed test master key and a cheap KDF."""
    return KeyManager(session_factory, TEST_MASTER_KEY, iterations=FAST_KDF_ITERATIONS)


@pytest.fixture()
def privacy(session_factory: async_sessionmaker[AsyncSession], audit_log: AuditLog) -> PrivacyPreferences:
    return PrivacyPreferences(session_factory, audit_log)


@pytest.fixture()
def locks() -> DataLockManager:
    return DataLockManager()


@pytest_asyncio.fixture()
async def jobs() -> AsyncIterator[BackgroundJobs]:
    job_set = BackgroundJobs()
    yield job_set
    await job_set.drain(timeout=5)


@pytest.fixture()
def file_store(tmp_path: Path) -> LocalFileStore:
    return LocalFileStore(tmp_path / "exports")


@pytest.fixture()
def settings(tmp_path: Path) -> ComplianceSettings:
    return ComplianceSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'trust.db'}",
        dev_mode=True,
        export_dir=str(tmp_path / "exports"),
    )


@pytest_asyncio.fixture()
async def trust_engine(
    session_factory: async_sessionmaker[AsyncSession],
    settings: ComplianceSettings,
    file_store: LocalFileStore,
    clock: FakeClock,
) -> AsyncIterator[TrustEngine]:
    """Fully wired engine with the audit dispatcher running."""
    wired = build_trust_engine(
        session_factory, settings, TEST_MASTER_KEY, file_store=file_store, clock=clock
    )
    await wired.start()
    yield wired
    await wired.aclose(timeout=5)


# ---------------------------------------------------------------------------
# 5. Data helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_user(
    session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
) -> Callable[..., Awaitable[str]]:
    """Insert a user row and return its id."""

    async def _make(user_id: str = "user-1", tier: str = "free", email: str | None = None) -> str:
        async with session_factory() as session, session.begin():
            session.add(
                User(
                    id=user_id,
                    email=email or f"{user_id}@example.com",
                    name=user_id.title(),
                    subscription_tier=tier,
                    created_at=clock(),
                )
            )
        return user_id

    return _make


@pytest.fixture()
def add_rows(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[None]]:
    """Insert arbitrary mapped rows in one transaction."""

    async def _add(*rows: Any) -> None:
        async with session_factory() as session, session.begin():
            session.add_all(rows)

    return _add


@pytest.fixture()
def make_session_with_media(
    add_rows: Callable[..., Awaitable[None]],
) -> Callable[..., Awaitable[str]]:
    """Insert one interview session with an audio chunk and a transcription, all of one age."""

    async def _make(session_id: str, user_id: str, created_at: datetime) -> str:
        await add_rows(
            InterviewSession(id=session_id, user_id=user_id, created_at=created_at),
            AudioChunk(session_id=session_id, created_at=created_at),
            TranscriptionResult(session_id=session_id, text="hello", created_at=created_at),
        )
        return session_id

    return _make
