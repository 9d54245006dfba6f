"""
GDPR export snapshot (Art. 15 & 20).

Collects everything stored about one user for the selected data categories
and renders it as JSON or as a flat CSV. The user record is always part of
the snapshot.

CSV layout: one row per scalar value, ``section,index,field,value``.
Nested values (a session's interactions, a practice session's questions)
are JSON-encoded into the value cell.
"""

import csv
import io
import json
import logging
from collections.abc import Iterable
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trust_engine.lib.exceptions import NotFoundError, ValidationError
from trust_engine.lib.security import hash_uid
from trust_engine.models.audit import AuditEntry
from trust_engine.models.base import row_to_dict
from trust_engine.models.coaching import (
    AudioChunk,
    Interaction,
    InterviewSession,
    PracticeAnalytics,
    PracticeQuestion,
    PracticeResponse,
    PracticeSession,
    SessionMetrics,
    TranscriptionResult,
    User,
    UserProfile,
)
from trust_engine.models.consent import ConsentRecord
from trust_engine.models.export_request import DataCategory, ExportFormat
from trust_engine.models.retention import PrivacySetting
from trust_engine.models.usage_pattern import UsagePattern

logger = logging.getLogger(__name__)

CSV_HEADER = ("section", "index", "field", "value")


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.hex()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _rows(rows: Iterable[Any], exclude: tuple[str, ...] = ()) -> list[dict[str, Any]]:
    return [row_to_dict(r, exclude) for r in rows]


def _group(rows: list[dict[str, Any]], key: str) -> dict[str, list[dict[str, Any]]]:
    grouped: dict[str, list[dict[str, Any]]] = {}
    for row in rows:
        grouped.setdefault(row[key], []).append(row)
    return grouped


async def collect_user_data(
    session: AsyncSession, user_id: str, categories: Iterable[DataCategory | str]
) -> dict[str, Any]:
    """
    Build the export snapshot of one user.

    Args:
        session: Read session
        user_id: User to export
        categories: Selected categories; DataCategory.ALL selects everything

    Returns:
        Dict keyed by section name ("user" plus one key per selected category)

    Raises:
        NotFoundError: The user row is missing
    """
    selected = {DataCategory(c) for c in categories}
    if DataCategory.ALL in selected:
        selected = set(DataCategory) - {DataCategory.ALL}

    async def fetch(stmt: Any) -> list[Any]:
        return list((await session.execute(stmt)).scalars().all())

    user = await session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {hash_uid(user_id)} not found")
    snapshot: dict[str, Any] = {"user": row_to_dict(user)}

    session_ids = select(InterviewSession.id).where(InterviewSession.user_id == user_id)

    if DataCategory.PROFILE in selected:
        profile = await session.scalar(select(UserProfile).where(UserProfile.user_id == user_id))
        snapshot["profile"] = row_to_dict(profile) if profile is not None else None

    if DataCategory.SESSIONS in selected:
        sessions = _rows(
            await fetch(
                select(InterviewSession)
                .where(InterviewSession.user_id == user_id)
                .order_by(InterviewSession.created_at)
            )
        )
        interactions = _group(
            _rows(
                await fetch(
                    select(Interaction)
                    .where(Interaction.session_id.in_(session_ids))
                    .order_by(Interaction.created_at)
                )
            ),
            "session_id",
        )
        metrics = _group(
            _rows(await fetch(select(SessionMetrics).where(SessionMetrics.session_id.in_(session_ids)))),
            "session_id",
        )
        for item in sessions:
            item["interactions"] = interactions.get(item["id"], [])
            item["metrics"] = metrics.get(item["id"], [])
        snapshot["sessions"] = sessions

    if DataCategory.TRANSCRIPTIONS in selected:
        snapshot["transcriptions"] = _rows(
            await fetch(
                select(TranscriptionResult)
                .where(TranscriptionResult.session_id.in_(session_ids))
                .order_by(TranscriptionResult.created_at)
            )
        )

    if DataCategory.AUDIO in selected:
        # Metadata only; the audio bytes live in the media store.
        snapshot["audio"] = _rows(
            await fetch(
                select(AudioChunk)
                .where(AudioChunk.session_id.in_(session_ids))
                .order_by(AudioChunk.created_at, AudioChunk.sequence_number)
            )
        )

    if DataCategory.PRACTICE in selected:
        practice_ids = select(PracticeSession.id).where(PracticeSession.user_id == user_id)
        practice = _rows(
            await fetch(
                select(PracticeSession)
                .where(PracticeSession.user_id == user_id)
                .order_by(PracticeSession.created_at)
            )
        )
        questions = _group(
            _rows(await fetch(select(PracticeQuestion).where(PracticeQuestion.session_id.in_(practice_ids)))),
            "session_id",
        )
        responses = _group(
            _rows(await fetch(select(PracticeResponse).where(PracticeResponse.session_id.in_(practice_ids)))),
            "session_id",
        )
        for item in practice:
            item["questions"] = questions.get(item["id"], [])
            item["responses"] = responses.get(item["id"], [])
        snapshot["practice"] = {
            "sessions": practice,
            "analytics": _rows(
                await fetch(select(PracticeAnalytics).where(PracticeAnalytics.user_id == user_id))
            ),
        }

    if DataCategory.AUDIT in selected:
        snapshot["auditLogs"] = _rows(
            await fetch(
                select(AuditEntry)
                .where(AuditEntry.user_id == user_id)
                .order_by(AuditEntry.created_at)
            ),
            exclude=("user_agent",),
        )

    if DataCategory.PRIVACY in selected:
        snapshot["consents"] = _rows(
            await fetch(
                select(ConsentRecord)
                .where(ConsentRecord.user_id == user_id)
                .order_by(ConsentRecord.consent_type, ConsentRecord.version)
            )
        )
        settings = await session.scalar(
            select(PrivacySetting).where(PrivacySetting.user_id == user_id)
        )
        snapshot["privacySettings"] = row_to_dict(settings) if settings is not None else None

    if DataCategory.ANALYTICS in selected:
        snapshot["usagePatterns"] = _rows(
            await fetch(
                select(UsagePattern)
                .where(UsagePattern.user_id == user_id)
                .order_by(UsagePattern.created_at)
            )
        )

    logger.debug(
        "Collected export snapshot for user_hash=%s: %s",
        hash_uid(user_id),
        sorted(snapshot),
    )
    return snapshot


def _csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=_json_default, sort_keys=True)
    return str(value)


def _csv_records(section: str, value: Any) -> Iterable[tuple[str, int, str, str]]:
    if value is None:
        return
    if isinstance(value, dict) and all(isinstance(v, list) for v in value.values()) and value:
        # e.g. practice -> {"sessions": [...], "analytics": [...]}
        for key, items in value.items():
            yield from _csv_records(f"{section}.{key}", items)
        return
    items = value if isinstance(value, list) else [value]
    for index, item in enumerate(items):
        if isinstance(item, dict):
            for field_name, field_value in item.items():
                yield section, index, field_name, _csv_cell(field_value)
        else:
            yield section, index, "value", _csv_cell(item)


def render_export(snapshot: dict[str, Any], export_format: ExportFormat | str) -> bytes:
    """
    Serialise a snapshot.

    Raises:
        ValidationError: Unknown export format
    """
    try:
        fmt = ExportFormat(export_format)
    except ValueError as e:
        raise ValidationError(f"Unsupported export format: {export_format}") from e

    if fmt is ExportFormat.JSON:
        return json.dumps(snapshot, default=_json_default, indent=2).encode("utf-8")

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADER)
    for section, value in snapshot.items():
        writer.writerows(_csv_records(section, value))
    return buffer.getvalue().encode("utf-8")
