"""
Coaching-domain tables owned by collaborating services.

The interview, transcription and practice services create these rows. The
compliance engine only counts, reads and deletes them (retention sweeps,
GDPR export and erasure, risk heuristics), so only the columns those
operations touch are modelled here.

All references between rows are weak (plain id columns, no database-level
cascades); deletion order is enforced by the purge primitive.
"""

from __future__ import annotations

from sqlalchemy import JSON, Column, Float, Index, Integer, String, Text

from trust_engine.models.base import Base, UTCDateTime, new_id, utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True, default=new_id)
    email = Column(String(255), nullable=True)
    name = Column(String(255), nullable=True)
    subscription_tier = Column(String(32), nullable=False, default="free")
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, unique=True)
    headline = Column(String(255), nullable=True)
    target_role = Column(String(255), nullable=True)
    experience_level = Column(String(32), nullable=True)
    skills = Column(JSON, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class InterviewSession(Base):
    __tablename__ = "interview_sessions"

    id = Column(String(64), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False)
    title = Column(String(255), nullable=True)
    status = Column(String(32), nullable=False, default="active")
    started_at = Column(UTCDateTime, nullable=True)
    ended_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_interview_sessions_user_created", "user_id", "created_at"),)


class Interaction(Base):
    __tablename__ = "interactions"

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(String(64), nullable=False, index=True)
    speaker = Column(String(32), nullable=True)
    content = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class SessionMetrics(Base):
    __tablename__ = "session_metrics"

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(String(64), nullable=False, index=True)
    total_words = Column(Integer, nullable=True)
    speaking_time_seconds = Column(Float, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class AudioChunk(Base):
    __tablename__ = "audio_chunks"

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(String(64), nullable=False, index=True)
    sequence_number = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Integer, nullable=True)
    storage_key = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)


class TranscriptionResult(Base):
    __tablename__ = "transcription_results"

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(String(64), nullable=False, index=True)
    text = Column(Text, nullable=True)
    confidence = Column(Float, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)


class TranscriptionCache(Base):
    __tablename__ = "transcription_cache"

    id = Column(String(36), primary_key=True, default=new_id)
    cache_key = Column(String(128), nullable=False, unique=True)
    text = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)


class PracticeSession(Base):
    __tablename__ = "practice_sessions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class PracticeQuestion(Base):
    __tablename__ = "practice_questions"

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(String(36), nullable=False, index=True)
    question = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class PracticeResponse(Base):
    __tablename__ = "practice_responses"

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(String(36), nullable=False, index=True)
    question_id = Column(String(36), nullable=True)
    response = Column(Text, nullable=True)
    score = Column(Float, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class PracticeAnalytics(Base):
    __tablename__ = "practice_analytics"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    metrics = Column(JSON, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
