"""
Database models for the Trust & Compliance Engine.

Importing this package registers every table on ``Base.metadata``.
"""

from trust_engine.models.audit import API_CALL_ACTIONS, SECURITY_ACTIONS, AuditAction, AuditEntry
from trust_engine.models.base import Base, UTCDateTime, new_id, utcnow
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
from trust_engine.models.consent import REQUIRED_CONSENTS, ConsentRecord, ConsentType
from trust_engine.models.encryption_key import EncryptionKeyRecord, KeyPurpose
from trust_engine.models.export_request import (
    DataCategory,
    DataExportRequest,
    ExportFormat,
    ExportStatus,
    RequestType,
)
from trust_engine.models.retention import (
    DEFAULT_RETENTION_DAYS,
    DataDomain,
    PrivacySetting,
    RetentionPolicy,
)
from trust_engine.models.usage_pattern import PatternType, UsagePattern

__all__ = [
    "API_CALL_ACTIONS",
    "AudioChunk",
    "AuditAction",
    "AuditEntry",
    "Base",
    "ConsentRecord",
    "ConsentType",
    "DEFAULT_RETENTION_DAYS",
    "DataCategory",
    "DataDomain",
    "DataExportRequest",
    "EncryptionKeyRecord",
    "ExportFormat",
    "ExportStatus",
    "Interaction",
    "InterviewSession",
    "KeyPurpose",
    "PatternType",
    "PracticeAnalytics",
    "PracticeQuestion",
    "PracticeResponse",
    "PracticeSession",
    "PrivacySetting",
    "REQUIRED_CONSENTS",
    "RequestType",
    "RetentionPolicy",
    "SECURITY_ACTIONS",
    "SessionMetrics",
    "TranscriptionCache",
    "TranscriptionResult",
    "UTCDateTime",
    "UsagePattern",
    "User",
    "UserProfile",
    "new_id",
    "utcnow",
]
