"""
Retention policies and per-user privacy settings.

RetentionPolicy rows are global, one per data domain, and admin-managed.
PrivacySetting rows are per user. Their audio and transcription periods
apply on top of the global policy, so the shorter one wins.
"""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Boolean, CheckConstraint, Column, Integer, String, Text

from trust_engine.models.base import Base, UTCDateTime, new_id, utcnow


class DataDomain(StrEnum):
    """Data domains swept by the retention scheduler."""

    AUDIO = "audio"
    TRANSCRIPTION = "transcription"
    SESSION = "session"
    ANALYTICS = "analytics"


DEFAULT_RETENTION_DAYS: dict[DataDomain, tuple[int, str]] = {
    DataDomain.AUDIO: (30, "Raw audio chunks from interview sessions"),
    DataDomain.TRANSCRIPTION: (90, "Transcription results and cache"),
    DataDomain.SESSION: (365, "Interview sessions, interactions and metrics"),
    DataDomain.ANALYTICS: (730, "Practice analytics and usage patterns"),
}


class RetentionPolicy(Base):
    """Global retention rule for one data domain."""

    __tablename__ = "data_retention_policies"

    id = Column(String(36), primary_key=True, default=new_id)
    data_type = Column(String(32), nullable=False, unique=True)
    retention_days = Column(Integer, nullable=False)
    auto_delete = Column(Boolean, nullable=False, default=True)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("retention_days >= 1", name="ck_retention_policy_days"),
    )

    def __repr__(self) -> str:
        return f"<RetentionPolicy(data_type={self.data_type}, days={self.retention_days})>"


class PrivacySetting(Base):
    """
    Per-user privacy preferences.

    Attributes:
        audio_retention_days: Overrides the global audio policy for this user.
        transcription_retention_days: Overrides the global transcription policy.
        allow_analytics / allow_data_sharing / marketing_emails /
        session_recording / ai_training_consent: Feature toggles.
    """

    __tablename__ = "privacy_settings"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, unique=True)
    audio_retention_days = Column(Integer, nullable=False, default=30)
    transcription_retention_days = Column(Integer, nullable=False, default=90)
    allow_analytics = Column(Boolean, nullable=False, default=True)
    allow_data_sharing = Column(Boolean, nullable=False, default=False)
    marketing_emails = Column(Boolean, nullable=False, default=False)
    session_recording = Column(Boolean, nullable=False, default=True)
    ai_training_consent = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("audio_retention_days >= 1", name="ck_privacy_audio_days"),
        CheckConstraint("transcription_retention_days >= 1", name="ck_privacy_transcription_days"),
    )

    def __repr__(self) -> str:
        return f"<PrivacySetting(user_id={self.user_id})>"
