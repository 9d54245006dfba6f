"""
Background work for the Trust & Compliance Engine.

Tracked asyncio jobs, the daily APScheduler jobs and signal-driven
shutdown of the worker process.
"""

from trust_engine.workflows.jobs import BackgroundJobs
from trust_engine.workflows.scheduler import (
    EXPORT_CLEANUP_JOB_ID,
    RETENTION_JOB_ID,
    create_scheduler,
    install_compliance_jobs,
)
from trust_engine.workflows.shutdown import GracefulShutdownHandler

__all__ = [
    "BackgroundJobs",
    "GracefulShutdownHandler",
    "EXPORT_CLEANUP_JOB_ID",
    "RETENTION_JOB_ID",
    "create_scheduler",
    "install_compliance_jobs",
]
