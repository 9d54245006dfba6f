"""
Trust & Compliance Engine -- Worker Entry Point.

Runs the background compliance worker: daily retention sweep, expired
export cleanup and the audit dispatcher, until SIGTERM/SIGINT.

Usage:
    TRUST_DEV_MODE=1 python main.py
    TRUST_MASTER_KEY=<base64 32 bytes> TRUST_DATABASE_URL=postgresql+asyncpg://... python main.py
"""

from __future__ import annotations

import asyncio
import logging

from trust_engine.core.engine import build_trust_engine
from trust_engine.infra.database import create_engine, create_session_factory, init_models
from trust_engine.lib.config import get_settings
from trust_engine.lib.logging import setup_logging
from trust_engine.lib.security import load_master_key
from trust_engine.workflows.scheduler import create_scheduler, install_compliance_jobs
from trust_engine.workflows.shutdown import GracefulShutdownHandler

logger = logging.getLogger(__name__)


async def run() -> None:
    settings = get_settings()
    master_key = load_master_key(settings)

    db_engine = create_engine(settings)
    await init_models(db_engine)
    session_factory = create_session_factory(db_engine)

    engine = build_trust_engine(session_factory, settings, master_key)
    seeded = await engine.retention.seed_default_policies()
    if seeded:
        logger.info("Seeded %d default retention policies", seeded)

    await engine.start()
    scheduler = create_scheduler()
    install_compliance_jobs(scheduler, engine)
    scheduler.start()

    shutdown = GracefulShutdownHandler()
    shutdown.install()
    try:
        await shutdown.wait_for_shutdown()
    finally:
        shutdown.uninstall()
        scheduler.shutdown(wait=False)
        await engine.aclose()
        await db_engine.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(run())
