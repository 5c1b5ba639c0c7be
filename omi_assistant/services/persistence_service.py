"""Idempotent job handlers that write session state to the durable store.

Each handler receives the worker's SQLAlchemy session and a list of job
payloads for one execution unit; the queue commits or rolls back.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from omi_assistant.logging_config import get_logger
from omi_assistant.models import Conversation, Memory, Message, OmiSession, TranscriptSegment, UserContextWindow
from omi_assistant.services.background_queue import JobHandler, JobType
from omi_assistant.services.errors import PersistenceError

logger = get_logger("persistence")

DEFAULT_MEMORY_DEDUP_WINDOW = timedelta(hours=12)


def _as_uuid(value) -> Optional[uuid.UUID]:
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _coerce_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def segment_identity(segment: dict[str, Any]) -> str:
    """Stable segment id: the platform's id, else a digest of the text."""
    raw_id = segment.get("id") or segment.get("segment_id")
    if raw_id:
        return str(raw_id)
    text = str(segment.get("text") or "")
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def upsert_session_row(
    db: Session,
    *,
    session_id: str,
    user_id=None,
    conversation_handle: Optional[str] = None,
    last_seen_at=None,
) -> uuid.UUID:
    """Create or touch the session row and return its primary key.

    ``user_id`` is only written while the row has none, so the first linked
    user wins. A missing ``conversation_handle`` keeps the stored one.
    """
    stmt = insert(OmiSession).values(
        id=uuid.uuid4(),
        omi_session_id=str(session_id),
        user_id=_as_uuid(user_id),
        conversation_handle=conversation_handle,
        last_seen_at=_coerce_datetime(last_seen_at),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["omi_session_id"],
        set_={
            "user_id": func.coalesce(OmiSession.user_id, stmt.excluded.user_id),
            "conversation_handle": func.coalesce(stmt.excluded.conversation_handle, OmiSession.conversation_handle),
            "last_seen_at": func.greatest(OmiSession.last_seen_at, stmt.excluded.last_seen_at),
        },
    ).returning(OmiSession.id)
    return db.execute(stmt).scalar_one()


def upsert_sessions(db: Session, payloads: list[dict[str, Any]]) -> None:
    for payload in payloads:
        upsert_session_row(
            db,
            session_id=payload["session_id"],
            user_id=payload.get("user_id"),
            conversation_handle=payload.get("conversation_handle"),
            last_seen_at=payload.get("last_seen_at"),
        )


def _speaker_number(value) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    digits = str(value).rsplit("_", 1)[-1]
    return int(digits) if digits.isdigit() else None


def merge_segments(payloads: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Flatten segment lists; a later copy of the same segment id wins."""
    merged: dict[str, dict[str, Any]] = {}
    for payload in payloads:
        for segment in payload.get("segments") or []:
            if not segment:
                continue
            merged[segment_identity(segment)] = segment
    return [{**segment, "id": segment_id} for segment_id, segment in merged.items()]


def upsert_transcript_segments(db: Session, payloads: list[dict[str, Any]]) -> int:
    """Write all segments of one session as a single multi-row upsert."""
    if not payloads:
        return 0
    session_id = payloads[0]["session_id"]
    segments = merge_segments(payloads)
    if not segments:
        return 0

    session_pk = upsert_session_row(db, session_id=session_id)
    rows = [
        {
            "id": uuid.uuid4(),
            "omi_session_id": session_pk,
            "omi_segment_id": segment["id"],
            "text": str(segment.get("text") or ""),
            "speaker": segment.get("speaker"),
            "speaker_id": _speaker_number(segment.get("speaker_id")),
            "is_user": segment.get("is_user"),
            "start": segment.get("start"),
            "end": segment.get("end"),
        }
        for segment in segments
    ]
    stmt = insert(TranscriptSegment).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=["omi_session_id", "omi_segment_id"],
        set_={
            "text": stmt.excluded.text,
            "speaker": stmt.excluded.speaker,
            "speaker_id": stmt.excluded.speaker_id,
            "is_user": stmt.excluded.is_user,
            "start": stmt.excluded.start,
            "end": stmt.excluded.end,
        },
    )
    db.execute(stmt)
    logger.info(
        "Transcript segments upserted",
        extra={"context": {"session_id": session_id, "segments": len(rows), "jobs": len(payloads)}},
    )
    return len(rows)


def surrogate_handle(session_id: str) -> str:
    """Handle used when the completion service could not open a context."""
    return f"session:{session_id}"


def upsert_conversation_row(db: Session, *, session_pk, conversation_handle: str, user_id=None) -> uuid.UUID:
    stmt = insert(Conversation).values(
        id=uuid.uuid4(),
        omi_session_id=session_pk,
        conversation_handle=conversation_handle,
        user_id=_as_uuid(user_id),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["omi_session_id", "conversation_handle"],
        set_={"user_id": func.coalesce(Conversation.user_id, stmt.excluded.user_id)},
    ).returning(Conversation.id)
    return db.execute(stmt).scalar_one()


def save_conversation_turns(db: Session, payloads: list[dict[str, Any]]) -> None:
    for payload in payloads:
        session_id = payload["session_id"]
        handle = payload.get("conversation_handle") or surrogate_handle(session_id)
        session_pk = upsert_session_row(db, session_id=session_id, user_id=payload.get("user_id"))
        conversation_pk = upsert_conversation_row(
            db, session_pk=session_pk, conversation_handle=handle, user_id=payload.get("user_id")
        )

        turn_id = payload.get("turn_id")
        if turn_id:
            existing = (
                db.query(Message.id)
                .filter(
                    Message.conversation_id == conversation_pk,
                    Message.raw_payload["turn_id"].astext == str(turn_id),
                )
                .first()
            )
            if existing:
                logger.info(f"Conversation turn {turn_id} already saved, skipping")
                continue

        raw_payload = {"turn_id": turn_id} if turn_id else None
        question = (payload.get("question") or "").strip()
        answer = (payload.get("answer") or "").strip()
        if question:
            db.add(
                Message(
                    conversation_id=conversation_pk,
                    role="USER",
                    text=question,
                    source="OMI_TRANSCRIPT",
                    raw_payload=raw_payload,
                )
            )
        if answer:
            db.add(
                Message(
                    conversation_id=conversation_pk,
                    role="ASSISTANT",
                    text=answer,
                    source="SYSTEM",
                    raw_payload=raw_payload,
                )
            )
        db.flush()


def save_memories(
    db: Session,
    payloads: list[dict[str, Any]],
    *,
    dedup_window: timedelta = DEFAULT_MEMORY_DEDUP_WINDOW,
    mirror=None,
) -> int:
    """Insert memories unless the same text was saved for the user recently.

    ``mirror`` is an optional external memory index that receives every newly
    stored memory as well.
    """
    saved = 0
    since = datetime.now(timezone.utc) - dedup_window
    for payload in payloads:
        user_id = _as_uuid(payload.get("user_id"))
        text = (payload.get("text") or "").strip()
        if not user_id or not text:
            continue
        category = payload.get("category") or "note"

        duplicate = (
            db.query(Memory)
            .filter(Memory.user_id == user_id, Memory.text == text, Memory.created_at > since)
            .first()
        )
        if duplicate:
            logger.info(f"Memory deduplicated: {duplicate.id}")
            continue

        memory = Memory(user_id=user_id, text=text, category=category)
        db.add(memory)
        db.flush()
        saved += 1
        logger.info(f"Memory saved: {memory.id}")
        if mirror is not None:
            mirror.save(str(user_id), text, category)
    return saved


def update_context_windows(db: Session, payloads: list[dict[str, Any]]) -> None:
    """Point the user's active context window slot at the session's conversation."""
    for payload in payloads:
        user_id = _as_uuid(payload.get("user_id"))
        session_id = payload.get("session_id")
        if not user_id or not session_id:
            continue
        handle = payload.get("conversation_handle") or surrogate_handle(session_id)

        conversation = (
            db.query(Conversation)
            .join(OmiSession, OmiSession.id == Conversation.omi_session_id)
            .filter(OmiSession.omi_session_id == str(session_id), Conversation.conversation_handle == handle)
            .first()
        )
        if conversation is None:
            raise PersistenceError(JobType.CONTEXT_WINDOW_UPDATE.value, f"conversation not found for {session_id}")

        active = (
            db.query(UserContextWindow)
            .filter(UserContextWindow.user_id == user_id, UserContextWindow.is_active.is_(True))
            .first()
        )
        if active is not None:
            active.conversation_id = conversation.id
        else:
            slot_one = (
                db.query(UserContextWindow)
                .filter(UserContextWindow.user_id == user_id, UserContextWindow.slot == 1)
                .first()
            )
            if slot_one is None:
                db.add(UserContextWindow(user_id=user_id, slot=1, conversation_id=conversation.id, is_active=True))
            else:
                slot_one.conversation_id = conversation.id
                slot_one.is_active = True
        db.flush()
        logger.info(f"Context window updated for user: {user_id}")


def build_job_handlers(
    *,
    memory_dedup_window: timedelta = DEFAULT_MEMORY_DEDUP_WINDOW,
    memory_mirror=None,
) -> dict[JobType, JobHandler]:
    def _save_memories(db: Session, payloads: list[dict[str, Any]]) -> None:
        save_memories(db, payloads, dedup_window=memory_dedup_window, mirror=memory_mirror)

    return {
        JobType.SESSION_UPSERT: upsert_sessions,
        JobType.TRANSCRIPT_APPEND: upsert_transcript_segments,
        JobType.CONVERSATION_TURN_SAVE: save_conversation_turns,
        JobType.MEMORY_SAVE: _save_memories,
        JobType.CONTEXT_WINDOW_UPDATE: update_context_windows,
    }
