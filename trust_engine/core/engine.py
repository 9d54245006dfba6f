"""
Composition root for the Trust & Compliance Engine.

``build_trust_engine`` wires every service by constructor injection. There
is no global registry: the returned TrustEngine is the only place the
services are reachable from, and it owns the lifecycle of the background
pieces (audit dispatcher, job set).

Usage:
    engine = build_trust_engine(session_factory, settings, master_key)
    await engine.start()
    ...
    await engine.aclose()
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trust_engine.lib.config import ComplianceSettings
from trust_engine.lib.encryption import KeyManager
from trust_engine.lib.locks import DataLockManager
from trust_engine.models.base import utcnow
from trust_engine.services.audit_log import AuditDispatcher, AuditLog
from trust_engine.services.collaborators import (
    FileStore,
    LocalFileStore,
    SessionStore,
    SqlSessionStore,
    SqlUserDirectory,
    UserDirectory,
)
from trust_engine.services.consent_ledger import ConsentLedger
from trust_engine.services.domain_purge import DomainPurger
from trust_engine.services.erasure_orchestrator import ErasureOrchestrator
from trust_engine.services.privacy_preferences import PrivacyPreferences
from trust_engine.services.retention_scheduler import RetentionScheduler
from trust_engine.services.risk_engine import RiskEngine
from trust_engine.workflows.jobs import BackgroundJobs

logger = logging.getLogger(__name__)

_IP_HASH_CONTEXT = b"trust-engine:ip-hash"


def derive_ip_secret(master_key: bytes) -> bytes:
    """HMAC key for IP hashing, derived from the master secret."""
    return hmac.new(master_key, _IP_HASH_CONTEXT, hashlib.sha256).digest()


@dataclass
class TrustEngine:
    """Every wired service plus the shared background machinery."""

    settings: ComplianceSettings
    audit: AuditLog
    dispatcher: AuditDispatcher
    keys: KeyManager
    consents: ConsentLedger
    privacy: PrivacyPreferences
    risk: RiskEngine
    retention: RetentionScheduler
    erasure: ErasureOrchestrator
    locks: DataLockManager
    jobs: BackgroundJobs

    async def start(self) -> None:
        """Start the audit dispatcher. Must run inside the event loop."""
        self.dispatcher.start()
        logger.info("Trust engine started (environment=%s)", self.settings.environment)

    async def aclose(self, timeout: float = 30.0) -> None:
        """Drain background jobs, then flush and stop the audit dispatcher."""
        finished = await self.jobs.drain(timeout=timeout)
        if not finished:
            logger.warning("Background jobs did not finish within %.0fs", timeout)
        await self.dispatcher.stop(timeout=timeout)
        logger.info("Trust engine stopped")


def build_trust_engine(
    session_factory: async_sessionmaker[AsyncSession],
    settings: ComplianceSettings,
    master_key: bytes,
    file_store: FileStore | None = None,
    user_directory: UserDirectory | None = None,
    session_store: SessionStore | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> TrustEngine:
    """
    Wire the services.

    Collaborators default to the SQL-backed implementations and a
    LocalFileStore under ``settings.export_dir``.

    Raises:
        ConfigurationError: The master key is not 32 bytes
    """
    user_directory = user_directory or SqlUserDirectory(session_factory)
    session_store = session_store or SqlSessionStore(session_factory)
    file_store = file_store or LocalFileStore(settings.export_dir)

    audit = AuditLog(session_factory, clock=clock)
    dispatcher = AuditDispatcher(audit, maxsize=settings.audit_queue_size)
    keys = KeyManager(session_factory, master_key)
    locks = DataLockManager()
    jobs = BackgroundJobs()
    purger = DomainPurger()

    consents = ConsentLedger(
        session_factory,
        audit,
        derive_ip_secret(master_key),
        current_version=settings.consent_policy_version,
        clock=clock,
    )
    privacy = PrivacyPreferences(session_factory, audit)
    risk = RiskEngine(
        session_factory,
        audit,
        user_directory,
        session_store,
        thresholds=settings.risk_thresholds,
        tier_limits=settings.tier_limits,
        jobs=jobs,
        clock=clock,
    )
    retention = RetentionScheduler(
        session_factory,
        audit,
        privacy,
        locks,
        purger=purger,
        audit_retention_days=settings.audit_retention_days,
        clock=clock,
    )
    erasure = ErasureOrchestrator(
        session_factory,
        audit,
        user_directory,
        file_store,
        locks,
        keys,
        consents,
        privacy,
        retention,
        jobs,
        settings=settings,
        purger=purger,
        clock=clock,
    )

    return TrustEngine(
        settings=settings,
        audit=audit,
        dispatcher=dispatcher,
        keys=keys,
        consents=consents,
        privacy=privacy,
        risk=risk,
        retention=retention,
        erasure=erasure,
        locks=locks,
        jobs=jobs,
    )
