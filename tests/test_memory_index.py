from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import Mock

from omi_assistant.services.memory_index import (
    DatabaseMemoryIndex,
    MemoryRecord,
    build_memory_digest,
    search_memories_safely,
)

from conftest import FakeMemoryIndex

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def _row(text, minutes_ago, category="note"):
    return SimpleNamespace(id=f"id-{text[:4]}", text=text, category=category, created_at=NOW - timedelta(minutes=minutes_ago))


class TestDatabaseMemoryIndex:
    def test_ranks_by_overlap_then_recency(self, db_session):
        rows = [
            _row("Dentist appointment on Friday", 1),
            _row("Parked the car on level 3", 5),
            _row("Favourite car colour is blue", 10),
        ]
        db_session.query.return_value.filter.return_value.order_by.return_value.limit.return_value.all.return_value = rows
        index = DatabaseMemoryIndex(lambda: db_session)

        results = index.search("u1", "where is my car parked", limit=2)

        assert [record.text for record in results] == ["Parked the car on level 3", "Favourite car colour is blue"]
        db_session.close.assert_called_once()

    def test_empty_query_returns_most_recent(self, db_session):
        rows = [_row("newest", 1), _row("older", 5)]
        db_session.query.return_value.filter.return_value.order_by.return_value.limit.return_value.all.return_value = rows

        results = DatabaseMemoryIndex(lambda: db_session).search("u1", "", limit=5)

        assert [record.text for record in results] == ["newest", "older"]

    def test_save_commits_row(self, db_session):
        index = DatabaseMemoryIndex(lambda: db_session)
        index.save("6f1c1c52-33c5-4a55-9d1c-0c3b3f0f8e11", "likes tea", "preference")
        db_session.add.assert_called_once()
        db_session.commit.assert_called_once()


class TestDigest:
    def test_formats_bullets(self):
        records = [MemoryRecord(text="likes tea"), MemoryRecord(text="lives in Oslo")]
        assert build_memory_digest(records) == "- likes tea\n- lives in Oslo"

    def test_truncates(self):
        records = [MemoryRecord(text="x" * 50)]
        assert len(build_memory_digest(records, max_chars=20)) == 20


class TestSearchSafely:
    def test_errors_degrade_to_empty(self):
        index = FakeMemoryIndex(error=ConnectionError("index offline"))
        assert search_memories_safely(index, "u1", "query") == []

    def test_no_user_skips_lookup(self):
        index = Mock()
        assert search_memories_safely(index, None, "query") == []
        index.search.assert_not_called()

    def test_returns_results(self, memory_record):
        index = FakeMemoryIndex(records=[memory_record])
        assert search_memories_safely(index, "u1", "milk", limit=3) == [memory_record]
