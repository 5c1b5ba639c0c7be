import hashlib
import uuid
from datetime import timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy.dialects import postgresql

from omi_assistant.models import Memory, Message, UserContextWindow
from omi_assistant.services.background_queue import JobType
from omi_assistant.services.errors import PersistenceError
from omi_assistant.services.persistence_service import (
    _speaker_number,
    build_job_handlers,
    merge_segments,
    save_conversation_turns,
    save_memories,
    segment_identity,
    surrogate_handle,
    update_context_windows,
    upsert_session_row,
    upsert_transcript_segments,
)

USER_ID = "6f1c1c52-33c5-4a55-9d1c-0c3b3f0f8e11"


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _added(db, model):
    return [call.args[0] for call in db.add.call_args_list if isinstance(call.args[0], model)]


class TestSegmentIdentity:
    def test_uses_platform_id(self):
        assert segment_identity({"id": 7, "text": "hi"}) == "7"

    def test_falls_back_to_text_digest(self):
        assert segment_identity({"text": "hello"}) == hashlib.sha1(b"hello").hexdigest()

    def test_merge_keeps_latest_copy_of_segment(self):
        payloads = [
            {"session_id": "s1", "segments": [{"id": "a", "text": "hel"}, {"id": "b", "text": "two"}]},
            {"session_id": "s1", "segments": [{"id": "a", "text": "hello"}]},
        ]
        merged = merge_segments(payloads)
        assert [segment["id"] for segment in merged] == ["a", "b"]
        assert merged[0]["text"] == "hello"


class TestUpsertSession:
    def test_first_linked_user_wins(self, db_session):
        upsert_session_row(db_session, session_id="s1", user_id=USER_ID, last_seen_at=1767614400.0)

        stmt = db_session.execute.call_args[0][0]
        sql = _sql(stmt)
        assert "ON CONFLICT (omi_session_id) DO UPDATE" in sql
        assert "coalesce(omi_sessions.user_id, excluded.user_id)" in sql
        assert "coalesce(excluded.conversation_handle, omi_sessions.conversation_handle)" in sql

    def test_returns_primary_key(self, db_session):
        session_pk = uuid.uuid4()
        db_session.execute.return_value.scalar_one.return_value = session_pk
        assert upsert_session_row(db_session, session_id="s1") == session_pk


class TestUpsertTranscriptSegments:
    def test_single_multi_row_upsert(self, db_session):
        payloads = [
            {"session_id": "s1", "segments": [{"id": "a", "text": "hey omi"}]},
            {"session_id": "s1", "segments": [{"id": "b", "text": "what's the weather"}, {"text": "no id"}]},
        ]

        written = upsert_transcript_segments(db_session, payloads)

        assert written == 3
        # One session upsert plus one segment statement
        assert db_session.execute.call_count == 2
        sql = _sql(db_session.execute.call_args_list[1][0][0])
        assert "INSERT INTO transcript_segments" in sql
        assert "ON CONFLICT (omi_session_id, omi_segment_id) DO UPDATE" in sql

    def test_no_segments_is_noop(self, db_session):
        assert upsert_transcript_segments(db_session, [{"session_id": "s1", "segments": []}]) == 0
        db_session.execute.assert_not_called()


class TestSaveConversationTurns:
    def test_saves_question_and_answer(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None

        save_conversation_turns(
            db_session,
            [
                {
                    "session_id": "s1",
                    "user_id": USER_ID,
                    "conversation_handle": "conv_1",
                    "question": "what's the weather",
                    "answer": "Sunny.",
                    "turn_id": "t1",
                }
            ],
        )

        messages = _added(db_session, Message)
        assert [(m.role, m.text) for m in messages] == [("USER", "what's the weather"), ("ASSISTANT", "Sunny.")]
        assert messages[0].raw_payload == {"turn_id": "t1"}

    def test_replayed_turn_is_skipped(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = ("existing",)

        save_conversation_turns(
            db_session,
            [{"session_id": "s1", "conversation_handle": "conv_1", "question": "q", "answer": "a", "turn_id": "t1"}],
        )

        assert _added(db_session, Message) == []

    def test_missing_handle_uses_session_surrogate(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None

        save_conversation_turns(db_session, [{"session_id": "s1", "question": "q", "answer": "a"}])

        conversation_stmt = db_session.execute.call_args_list[1][0][0]
        params = conversation_stmt.compile(dialect=postgresql.dialect()).params
        assert params["conversation_handle"] == surrogate_handle("s1")


class TestSaveMemories:
    def test_inserts_new_memory_and_mirrors(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None
        mirror = Mock()

        saved = save_memories(db_session, [{"user_id": USER_ID, "text": "I park on level 3"}], mirror=mirror)

        assert saved == 1
        memory = _added(db_session, Memory)[0]
        assert memory.text == "I park on level 3"
        assert memory.category == "note"
        mirror.save.assert_called_once_with(USER_ID, "I park on level 3", "note")

    def test_recent_duplicate_is_skipped(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = Mock(id="m1")

        saved = save_memories(db_session, [{"user_id": USER_ID, "text": "I park on level 3"}])

        assert saved == 0
        db_session.add.assert_not_called()

    def test_memory_without_user_is_ignored(self, db_session):
        assert save_memories(db_session, [{"user_id": None, "text": "orphan"}]) == 0
        db_session.query.assert_not_called()


class TestUpdateContextWindows:
    def _payload(self):
        return [{"user_id": USER_ID, "session_id": "s1", "conversation_handle": "conv_1"}]

    def test_points_active_slot_at_conversation(self, db_session):
        conversation = Mock(id=uuid.uuid4())
        active = Mock(conversation_id=None)
        db_session.query.return_value.join.return_value.filter.return_value.first.return_value = conversation
        db_session.query.return_value.filter.return_value.first.return_value = active

        update_context_windows(db_session, self._payload())

        assert active.conversation_id == conversation.id
        db_session.add.assert_not_called()

    def test_creates_slot_one_when_user_has_no_windows(self, db_session):
        conversation = Mock(id=uuid.uuid4())
        db_session.query.return_value.join.return_value.filter.return_value.first.return_value = conversation
        db_session.query.return_value.filter.return_value.first.side_effect = [None, None]

        update_context_windows(db_session, self._payload())

        window = _added(db_session, UserContextWindow)[0]
        assert window.slot == 1
        assert window.is_active is True
        assert window.conversation_id == conversation.id

    def test_activates_existing_slot_one(self, db_session):
        conversation = Mock(id=uuid.uuid4())
        slot_one = Mock(is_active=False)
        db_session.query.return_value.join.return_value.filter.return_value.first.return_value = conversation
        db_session.query.return_value.filter.return_value.first.side_effect = [None, slot_one]

        update_context_windows(db_session, self._payload())

        assert slot_one.is_active is True
        assert slot_one.conversation_id == conversation.id

    def test_missing_conversation_raises_for_retry(self, db_session):
        db_session.query.return_value.join.return_value.filter.return_value.first.return_value = None

        with pytest.raises(PersistenceError):
            update_context_windows(db_session, self._payload())


class TestBuildJobHandlers:
    def test_covers_every_job_type(self):
        handlers = build_job_handlers()
        assert set(handlers) == set(JobType)

    def test_memory_handler_uses_window_and_mirror(self, db_session):
        mirror = Mock()
        handlers = build_job_handlers(memory_dedup_window=timedelta(hours=1), memory_mirror=mirror)
        db_session.query.return_value.filter.return_value.first.return_value = None

        handlers[JobType.MEMORY_SAVE](db_session, [{"user_id": USER_ID, "text": "likes tea"}])

        mirror.save.assert_called_once()


@pytest.mark.parametrize("value,expected", [(2, 2), ("SPEAKER_01", 1), ("3", 3), ("guest", None), (None, None)])
def test_speaker_number(value, expected):
    assert _speaker_number(value) == expected
