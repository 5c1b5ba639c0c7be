from datetime import datetime, timezone
from typing import Optional
from unittest.mock import Mock

import pytest

from omi_assistant.config import Settings
from omi_assistant.services.llm.base import LLMProvider, LLMResponse
from omi_assistant.services.memory_index import MemoryIndex, MemoryRecord

# 2026-01-05 12:00:00 UTC
NOON_TS = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    def __init__(self, now: float = NOON_TS):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeLLM(LLMProvider):
    def __init__(self, reply: str = "It is sunny.", handle: str = "conv_new", error: Optional[Exception] = None):
        self.reply = reply
        self.handle = handle
        self.error = error
        self.calls = []
        self.handles_created = 0

    def complete(self, input, context_handle=None, system_context=None):
        self.calls.append({"input": input, "context_handle": context_handle, "system_context": system_context})
        if self.error is not None:
            raise self.error
        return LLMResponse(content=self.reply, model="fake", context_handle=context_handle)

    def create_context_handle(self, metadata=None):
        self.handles_created += 1
        return self.handle


class FakeMemoryIndex(MemoryIndex):
    def __init__(self, records=None, error: Optional[Exception] = None):
        self.records = records or []
        self.error = error
        self.searches = []
        self.saved = []

    def search(self, user_id, query, limit=20):
        self.searches.append((user_id, query, limit))
        if self.error is not None:
            raise self.error
        return list(self.records)[:limit]

    def save(self, user_id, text, category="note"):
        self.saved.append((user_id, text, category))
        return f"mem-{len(self.saved)}"


class FakeNotifier:
    def __init__(self, is_configured: bool = True):
        self.is_configured = is_configured
        self.sent = []

    def send(self, uid: str, message: str) -> bool:
        self.sent.append((uid, message))
        return True


class RecordingQueue:
    """Stands in for BackgroundQueue where only the hand-off matters."""

    def __init__(self):
        self.jobs = []

    def enqueue_many(self, jobs):
        self.jobs.extend(jobs)

    def status(self):
        return {
            "pending": len(self.jobs),
            "running": False,
            "batch_size": 50,
            "processed": 0,
            "failed": 0,
            "retried": 0,
            "dropped": 0,
            "abandoned": 0,
        }


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        openai_api_key="test-key",
        omi_app_id="app-1",
        omi_app_secret="secret",
        quiet_hours_timezone="UTC",
    )


@pytest.fixture
def memory_record():
    return MemoryRecord(text="Likes oat milk", category="preference")
