"""
Advisory locks between erasure and retention work.

A GDPR delete for a user and any retention sweep that could touch that
user's rows must not interleave. DataLockManager gives two scopes:

- ``user_scope(user_id)``: exclusive per user; many different users may
  hold their scopes at the same time.
- ``sweep_scope()``: exclusive against every user scope (and other sweeps).
  Waits for in-flight user work to finish and blocks new user work while
  the global sweep runs.

The locks are process-local (asyncio). On PostgreSQL the erasure
transaction also takes ``pg_advisory_xact_lock`` so separate worker
processes serialise on the same user.

Usage:
    locks = DataLockManager()

    async with locks.user_scope(user_id):
        ...  # per-user delete

    async with locks.sweep_scope():
        ...  # global retention sweep
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class DataLockManager:
    """Reader/writer style lock: user scopes are readers of the sweep, writers per user."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._sweeping = False
        self._active_users = 0
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._user_refs: dict[str, int] = {}

    @property
    def sweeping(self) -> bool:
        return self._sweeping

    @asynccontextmanager
    async def user_scope(self, user_id: str) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._sweeping)
            self._active_users += 1
            lock = self._user_locks.setdefault(user_id, asyncio.Lock())
            self._user_refs[user_id] = self._user_refs.get(user_id, 0) + 1

        try:
            async with lock:
                yield
        finally:
            async with self._cond:
                self._active_users -= 1
                self._user_refs[user_id] -= 1
                if self._user_refs[user_id] == 0:
                    del self._user_refs[user_id]
                    del self._user_locks[user_id]
                self._cond.notify_all()

    @asynccontextmanager
    async def sweep_scope(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._sweeping and self._active_users == 0)
            self._sweeping = True
        logger.debug("Sweep lock acquired")

        try:
            yield
        finally:
            async with self._cond:
                self._sweeping = False
                self._cond.notify_all()
            logger.debug("Sweep lock released")
