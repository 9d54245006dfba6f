"""
Consent records, versioned per policy text.

Consent is tracked per (user_id, consent_type, version) so a new policy
version forces re-consent. Revocation is a logical flag (revoked_at), never
a row delete.

Data Classification: SENSITIVE (contains PII-adjacent data)
Retention: Until account erasure (legal evidence of consent)
"""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Boolean, Column, Index, String, Text

from trust_engine.models.base import Base, UTCDateTime, new_id, utcnow


class ConsentType(StrEnum):
    """Consent categories a user can grant or revoke."""

    AUDIO_PROCESSING = "audio_processing"
    DATA_STORAGE = "data_storage"
    ANALYTICS = "analytics"
    MARKETING = "marketing"
    AI_TRAINING = "ai_training"
    DATA_SHARING = "data_sharing"


REQUIRED_CONSENTS: tuple[ConsentType, ...] = (
    ConsentType.AUDIO_PROCESSING,
    ConsentType.DATA_STORAGE,
)


class ConsentRecord(Base):
    """
    Consent state for one (user, type, policy version).

    Attributes:
        granted: Current state.
        granted_at: Last grant time; kept when the consent is revoked.
        revoked_at: Last revoke time; cleared on re-grant.
        version: Policy text version the decision applies to.
        ip_hash: HMAC-SHA256 of the request IP (not the raw IP).
        user_agent: Request user agent.
    """

    __tablename__ = "consent_records"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False)
    consent_type = Column(String(32), nullable=False)
    granted = Column(Boolean, nullable=False, default=False)
    granted_at = Column(UTCDateTime, nullable=True)
    revoked_at = Column(UTCDateTime, nullable=True)
    version = Column(String(20), nullable=False)
    ip_hash = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("uq_consent_user_type_version", "user_id", "consent_type", "version", unique=True),
        Index("idx_consent_type_version", "consent_type", "version"),
    )

    def __repr__(self) -> str:
        return (
            f"<ConsentRecord(user_id={self.user_id}, type={self.consent_type}, "
            f"version={self.version}, granted={self.granted})>"
        )
