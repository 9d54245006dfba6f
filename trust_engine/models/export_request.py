"""
GDPR export / erasure requests.

A request row is created when the user asks for an export or deletion and
then moves through a small state machine driven by a background job:

    pending -> processing -> completed
                          -> failed

The export artifact referenced by ``export_url`` expires independently of
the row (``expires_at``).
"""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import JSON, Column, Index, String, Text

from trust_engine.lib.exceptions import InvalidStateTransitionError
from trust_engine.models.base import Base, UTCDateTime, new_id, utcnow


class RequestType(StrEnum):
    EXPORT = "export"
    DELETE = "delete"


class ExportFormat(StrEnum):
    JSON = "json"
    CSV = "csv"


class DataCategory(StrEnum):
    """Data categories a user can export or erase."""

    PROFILE = "profile"
    SESSIONS = "sessions"
    TRANSCRIPTIONS = "transcriptions"
    AUDIO = "audio"
    PRACTICE = "practice"
    AUDIT = "audit"
    PRIVACY = "privacy"
    ANALYTICS = "analytics"
    ALL = "all"


class ExportStatus(StrEnum):
    """Request lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExportStatus.COMPLETED, ExportStatus.FAILED)

    def can_transition_to(self, target: ExportStatus) -> bool:
        return target in _TRANSITIONS[self]

    def ensure_transition(self, target: ExportStatus) -> None:
        """Raise InvalidStateTransitionError unless ``self -> target`` is allowed."""
        if not self.can_transition_to(target):
            raise InvalidStateTransitionError(
                f"Cannot move export request from {self.value} to {target.value}"
            )


_TRANSITIONS: dict[ExportStatus, frozenset[ExportStatus]] = {
    ExportStatus.PENDING: frozenset({ExportStatus.PROCESSING}),
    ExportStatus.PROCESSING: frozenset({ExportStatus.COMPLETED, ExportStatus.FAILED}),
    ExportStatus.COMPLETED: frozenset(),
    ExportStatus.FAILED: frozenset(),
}


class DataExportRequest(Base):
    """One export or erasure request and its progress."""

    __tablename__ = "data_export_requests"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False)
    request_type = Column(String(16), nullable=False)
    requested_data_types = Column(JSON, nullable=False, default=list)
    export_format = Column(String(8), nullable=False, default=ExportFormat.JSON.value)
    status = Column(String(16), nullable=False, default=ExportStatus.PENDING.value)
    export_url = Column(Text, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_export_requests_user_created", "user_id", "created_at"),
        Index("idx_export_requests_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<DataExportRequest(id={self.id}, type={self.request_type}, status={self.status})>"
        )
