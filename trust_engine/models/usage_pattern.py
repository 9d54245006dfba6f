"""
Usage patterns recorded by the risk engine.

A row is written for every heuristic that trips. Rows are only mutated by
human review and are deleted by the analytics retention sweep.
"""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import JSON, Boolean, CheckConstraint, Column, Float, Index, String, Text

from trust_engine.models.base import Base, UTCDateTime, new_id, utcnow


class PatternType(StrEnum):
    """Kinds of usage pattern the risk engine records."""

    SESSION_FREQUENCY = "session_frequency"
    AUDIO_VOLUME = "audio_volume"
    API_USAGE = "api_usage"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    LOCATION_ANOMALY = "location_anomaly"
    DEVICE_ANOMALY = "device_anomaly"
    TIME_ANOMALY = "time_anomaly"


class UsagePattern(Base):
    """One tripped heuristic with its evidence and review state."""

    __tablename__ = "usage_patterns"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False)
    pattern_type = Column(String(32), nullable=False)
    pattern_data = Column(JSON, nullable=False, default=dict)
    risk_score = Column(Float, nullable=False, default=0.0)
    flagged = Column(Boolean, nullable=False, default=False)
    flagged_reason = Column(Text, nullable=True)
    reviewed = Column(Boolean, nullable=False, default=False)
    reviewed_by = Column(String(64), nullable=True)
    reviewed_at = Column(UTCDateTime, nullable=True)
    review_notes = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("risk_score >= 0 AND risk_score <= 100", name="ck_usage_patterns_score"),
        Index("idx_usage_patterns_user_created", "user_id", "created_at"),
        Index("idx_usage_patterns_review_queue", "flagged", "reviewed", "risk_score"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsagePattern(user_id={self.user_id}, type={self.pattern_type}, "
            f"score={self.risk_score}, flagged={self.flagged})>"
        )
