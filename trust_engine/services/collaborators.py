"""
Boundaries to the services that own users, sessions and files.

The compliance engine never creates users or interview sessions; it only
asks questions about them. Each boundary is a Protocol so it can be stubbed
in tests or backed by a remote service, plus a default implementation:

- UserDirectory  -> SqlUserDirectory   (existence, subscription tier)
- SessionStore   -> SqlSessionStore    (session counts, audio minutes)
- FileStore      -> LocalFileStore     (export artifacts on local disk)
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trust_engine.lib.security import sanitize_file_name
from trust_engine.models.base import row_to_dict
from trust_engine.models.coaching import InterviewSession, User

# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class UserDirectory(Protocol):
    async def exists(self, user_id: str) -> bool: ...

    async def get_subscription_tier(self, user_id: str) -> str | None:
        """Tier name, or None when the user does not exist."""
        ...

    async def get_user(self, user_id: str) -> dict[str, Any] | None: ...


@runtime_checkable
class SessionStore(Protocol):
    async def count_sessions_since(self, user_id: str, since: datetime) -> int: ...

    async def audio_minutes_since(self, user_id: str, since: datetime) -> float: ...


@runtime_checkable
class FileStore(Protocol):
    async def write(self, file_name: str, data: bytes) -> None: ...

    async def read(self, file_name: str) -> bytes: ...

    async def delete(self, file_name: str) -> None:
        """Raises FileNotFoundError when the file does not exist."""
        ...


# =============================================================================
# SQL-backed Implementations
# =============================================================================


class SqlUserDirectory:
    """UserDirectory over the shared ``users`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def exists(self, user_id: str) -> bool:
        async with self._session_factory() as session:
            found = await session.scalar(select(User.id).where(User.id == user_id))
        return found is not None

    async def get_subscription_tier(self, user_id: str) -> str | None:
        async with self._session_factory() as session:
            return await session.scalar(select(User.subscription_tier).where(User.id == user_id))

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
        return row_to_dict(user) if user is not None else None


class SqlSessionStore:
    """SessionStore over the shared ``interview_sessions`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def count_sessions_since(self, user_id: str, since: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(InterviewSession)
            .where(InterviewSession.user_id == user_id, InterviewSession.created_at >= since)
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    async def audio_minutes_since(self, user_id: str, since: datetime) -> float:
        """Sum of ``ended_at - started_at`` over finished sessions created since ``since``."""
        stmt = select(InterviewSession.started_at, InterviewSession.ended_at).where(
            InterviewSession.user_id == user_id,
            InterviewSession.created_at >= since,
            InterviewSession.started_at.is_not(None),
            InterviewSession.ended_at.is_not(None),
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return sum(
            max((ended - started).total_seconds(), 0.0) for started, ended in rows
        ) / 60.0


# =============================================================================
# Local File Store
# =============================================================================


class LocalFileStore:
    """
    Export artifacts stored as plain files under one directory.

    Blocking filesystem calls run in worker threads. File names are
    validated so nothing outside ``base_dir`` can be addressed.
    """

    def __init__(self, base_dir: str | Path) -> None:
        self._base_dir = Path(base_dir)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _path(self, file_name: str) -> Path:
        return self._base_dir / sanitize_file_name(file_name)

    def _write_sync(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(path)

    async def write(self, file_name: str, data: bytes) -> None:
        await asyncio.to_thread(self._write_sync, self._path(file_name), data)

    async def read(self, file_name: str) -> bytes:
        return await asyncio.to_thread(self._path(file_name).read_bytes)

    async def delete(self, file_name: str) -> None:
        await asyncio.to_thread(self._path(file_name).unlink)
