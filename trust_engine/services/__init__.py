"""
Compliance services.

- audit_log: Append-only audit trail and its bounded dispatcher
- consent_ledger: Versioned consent records and the action gate
- privacy_preferences: Per-user retention overrides and feature toggles
- risk_engine: Heuristic abuse scoring and the review queue
- retention_scheduler: Global retention policies and the daily sweep
- domain_purge: Transactional bulk delete shared by retention and erasure
- export_builder: GDPR export snapshot and its JSON/CSV rendering
- erasure_orchestrator: GDPR export / delete request lifecycle
- collaborators: User directory, session store and file store seams
"""

from trust_engine.services.audit_log import AuditDispatcher, AuditEvent, AuditLog
from trust_engine.services.collaborators import (
    FileStore,
    LocalFileStore,
    SessionStore,
    SqlSessionStore,
    SqlUserDirectory,
    UserDirectory,
)
from trust_engine.services.consent_ledger import (
    ConsentLedger,
    ConsentRequest,
    ConsentStatus,
    ProcessingAction,
)
from trust_engine.services.domain_purge import DomainPurger, PurgeResult, PurgeScope
from trust_engine.services.erasure_orchestrator import (
    ErasureOrchestrator,
    ExportRequestStatus,
    poll_export_request,
)
from trust_engine.services.privacy_preferences import (
    PrivacyOperation,
    PrivacyPreferences,
    PrivacySettingsUpdate,
    PrivacySettingsView,
)
from trust_engine.services.retention_scheduler import CleanupResult, RetentionScheduler, SweepReport
from trust_engine.services.risk_engine import RiskAlert, RiskEngine, SubscriptionTier

__all__ = [
    "AuditDispatcher",
    "AuditEvent",
    "AuditLog",
    "CleanupResult",
    "ConsentLedger",
    "ConsentRequest",
    "ConsentStatus",
    "DomainPurger",
    "ErasureOrchestrator",
    "ExportRequestStatus",
    "FileStore",
    "LocalFileStore",
    "PrivacyOperation",
    "PrivacyPreferences",
    "PrivacySettingsUpdate",
    "PrivacySettingsView",
    "ProcessingAction",
    "PurgeResult",
    "PurgeScope",
    "RetentionScheduler",
    "RiskAlert",
    "RiskEngine",
    "SessionStore",
    "SqlSessionStore",
    "SqlUserDirectory",
    "SubscriptionTier",
    "SweepReport",
    "UserDirectory",
    "poll_export_request",
]
