"""
SQLAlchemy Base for the Trust & Compliance Engine.

This module provides the declarative base shared by every model plus the
column helpers they use: UTC-aware timestamps and string UUID keys.

Usage:
    from trust_engine.models.base import Base, UTCDateTime, new_id, utcnow

    class MyModel(Base):
        __tablename__ = "my_table"
        id = Column(String(36), primary_key=True, default=new_id)
        created_at = Column(UTCDateTime, nullable=False, default=utcnow)
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    """Declarative base for all models."""


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    SQLite hands back naive values. They are stored as UTC, so UTC is
    re-attached on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        return as_utc(value)


def row_to_dict(row: Any, exclude: tuple[str, ...] = ()) -> dict[str, Any]:
    """Column values of a mapped instance, keyed by attribute name."""
    return {
        attr.key: getattr(row, attr.key)
        for attr in row.__mapper__.column_attrs
        if attr.key not in exclude
    }
