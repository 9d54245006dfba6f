"""
Encryption key records.

Only verification material is stored here (PBKDF2 hash of the derived key
and the salt it was derived from). Content keys themselves are never
persisted; KeyManager re-derives them from the master secret.

Data Classification: INTERNAL
Retention: Until full account erasure
"""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Boolean, Column, Index, String

from trust_engine.models.base import Base, UTCDateTime, new_id, utcnow


class KeyPurpose(StrEnum):
    """What a per-user key protects."""

    AUDIO = "audio"
    TRANSCRIPTION = "transcription"
    PROFILE = "profile"


class EncryptionKeyRecord(Base):
    """
    One key record per (user_id, purpose).

    Attributes:
        id: Primary key (UUID string).
        user_id: Weak reference to the owning user.
        purpose: KeyPurpose value.
        key_hash: Hex PBKDF2-SHA256 of the derived key, used to verify re-derivation.
        salt: Hex salt the key was derived from.
        algorithm: Cipher the key is used with.
        is_active: False only transiently during rotation.
    """

    __tablename__ = "encryption_keys"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False)
    purpose = Column(String(32), nullable=False)
    key_hash = Column(String(128), nullable=False)
    salt = Column(String(64), nullable=False)
    algorithm = Column(String(32), nullable=False, default="aes-256-gcm")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("uq_encryption_keys_user_purpose", "user_id", "purpose", unique=True),
    )

    def __repr__(self) -> str:
        return (
            f"<EncryptionKeyRecord(user_id={self.user_id}, purpose={self.purpose}, "
            f"active={self.is_active})>"
        )
