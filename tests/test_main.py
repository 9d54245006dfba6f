"""
Tests for the worker entry point (main.py).
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine

import main
from trust_engine.lib.config import ComplianceSettings
from trust_engine.models.retention import RetentionPolicy
from trust_engine.workflows.shutdown import GracefulShutdownHandler

MASTER_KEY = b"test-master-key-for-trust-engine"


@pytest.mark.asyncio
async def test_run_until_shutdown(tmp_path: Path) -> None:
    db_path = tmp_path / "worker.db"
    settings = ComplianceSettings(
        database_url=f"sqlite+aiosqlite:///{db_path}",
        dev_mode=True,
        export_dir=str(tmp_path / "exports"),
    )

    with (
        patch.object(main, "get_settings", return_value=settings),
        patch.object(main, "load_master_key", return_value=MASTER_KEY),
        patch.object(
            GracefulShutdownHandler, "wait_for_shutdown", new=AsyncMock(return_value=True)
        ) as wait,
    ):
        await main.run()

    wait.assert_awaited_once()
    check = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    try:
        async with check.connect() as conn:
            seeded = (await conn.execute(select(func.count()).select_from(RetentionPolicy))).scalar_one()
    finally:
        await check.dispose()
    assert seeded == 4
