"""
Append-only audit trail.

Every security-relevant action produces one AuditEntry. Entries are never
updated; the only way they leave the table is the age-based cleanup run by
the retention sweep.

Data Classification: SENSITIVE (contains IPs and user agents)
Retention: 365 days by default (TRUST_AUDIT_RETENTION_DAYS)
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, Column, Index, String, Text, event

from trust_engine.lib.exceptions import ImmutableRecordError
from trust_engine.models.base import Base, UTCDateTime, new_id, utcnow


class AuditAction(StrEnum):
    """Closed set of auditable actions."""

    # Authentication
    LOGIN = "login"
    LOGOUT = "logout"
    REGISTER = "register"
    PASSWORD_CHANGE = "password_change"

    # Audio processing
    AUDIO_CAPTURE_START = "audio_capture_start"
    AUDIO_CAPTURE_STOP = "audio_capture_stop"
    AUDIO_UPLOAD = "audio_upload"
    AUDIO_DELETE = "audio_delete"

    # Transcription
    TRANSCRIPTION_START = "transcription_start"
    TRANSCRIPTION_COMPLETE = "transcription_complete"
    TRANSCRIPTION_VIEW = "transcription_view"
    TRANSCRIPTION_DELETE = "transcription_delete"

    # Response generation
    RESPONSE_GENERATION = "response_generation"
    RESPONSE_VIEW = "response_view"
    RESPONSE_COPY = "response_copy"

    # Session management
    SESSION_CREATE = "session_create"
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    SESSION_DELETE = "session_delete"

    # Privacy and consent
    CONSENT_GRANT = "consent_grant"
    CONSENT_REVOKE = "consent_revoke"
    PRIVACY_SETTINGS_UPDATE = "privacy_settings_update"

    # Data management
    DATA_EXPORT_REQUEST = "data_export_request"
    DATA_EXPORT_DOWNLOAD = "data_export_download"
    DATA_DELETE_REQUEST = "data_delete_request"
    DATA_DELETE_COMPLETE = "data_delete_complete"

    # Profile management
    PROFILE_VIEW = "profile_view"
    PROFILE_UPDATE = "profile_update"
    PROFILE_DELETE = "profile_delete"

    # Security events
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    UNAUTHORIZED_ACCESS = "unauthorized_access"


SECURITY_ACTIONS: frozenset[AuditAction] = frozenset(
    {
        AuditAction.SUSPICIOUS_ACTIVITY,
        AuditAction.RATE_LIMIT_EXCEEDED,
        AuditAction.UNAUTHORIZED_ACCESS,
    }
)

# Actions that count as billable API calls for the risk engine.
API_CALL_ACTIONS: frozenset[AuditAction] = frozenset(
    {
        AuditAction.TRANSCRIPTION_START,
        AuditAction.RESPONSE_GENERATION,
        AuditAction.AUDIO_UPLOAD,
    }
)


class AuditEntry(Base):
    """
    One immutable audit event.

    Attributes:
        user_id: Weak reference to the acting user (None for system events).
        session_id: Weak reference to the interview session, if any.
        action: AuditAction value.
        resource_type / resource_id: What the action touched.
        details: Free-form JSON payload.
        ip_address / user_agent: Request origin, if known.
        success: False for failures and security events.
        error_message: Failure description, if any.
    """

    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=True)
    session_id = Column(String(64), nullable=True)
    action = Column(String(64), nullable=False)
    resource_type = Column(String(64), nullable=True)
    resource_id = Column(String(128), nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_audit_user_created", "user_id", "created_at"),
        Index("idx_audit_session_created", "session_id", "created_at"),
        Index("idx_audit_action_created", "action", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditEntry(action={self.action}, user_id={self.user_id}, success={self.success})>"


@event.listens_for(AuditEntry, "before_update")
def _reject_audit_update(mapper: Any, connection: Any, target: AuditEntry) -> None:
    raise ImmutableRecordError(f"Audit entry {target.id} is append-only")
