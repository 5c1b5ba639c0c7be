"""Memory index contract plus the default implementation over the memories table."""

import re
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from omi_assistant.logging_config import get_logger
from omi_assistant.models import Memory

logger = get_logger("memory_index")

_TOKEN_RE = re.compile(r"[\w']+", re.UNICODE)


@dataclass(frozen=True)
class MemoryRecord:
    text: str
    category: str = "note"
    timestamp: Optional[datetime] = None
    id: Optional[str] = None


class MemoryIndex(ABC):
    # True when save() writes to the same durable store the background queue uses
    backed_by_store = False

    @abstractmethod
    def search(self, user_id: str, query: str, limit: int = 20) -> List[MemoryRecord]:
        pass

    @abstractmethod
    def save(self, user_id: str, text: str, category: str = "note") -> str:
        pass


def tokenize(text: str) -> set:
    return {token for token in _TOKEN_RE.findall((text or "").lower()) if len(token) > 1}


class DatabaseMemoryIndex(MemoryIndex):
    """Ranks a user's recent memories by token overlap with the query, then recency."""

    backed_by_store = True

    def __init__(self, session_factory: Callable[[], Session], scan_limit: int = 200):
        self._session_factory = session_factory
        self.scan_limit = scan_limit

    def search(self, user_id: str, query: str, limit: int = 20) -> List[MemoryRecord]:
        db = self._session_factory()
        try:
            rows = (
                db.query(Memory)
                .filter(Memory.user_id == user_id)
                .order_by(Memory.created_at.desc())
                .limit(max(limit, self.scan_limit))
                .all()
            )
        finally:
            db.close()

        query_tokens = tokenize(query)
        ranked = sorted(
            enumerate(rows),
            key=lambda pair: (-len(query_tokens & tokenize(pair[1].text)), pair[0]),
        )
        return [
            MemoryRecord(text=row.text, category=row.category or "note", timestamp=row.created_at, id=str(row.id))
            for _, row in ranked[:limit]
        ]

    def save(self, user_id: str, text: str, category: str = "note") -> str:
        db = self._session_factory()
        try:
            memory = Memory(user_id=user_id, text=text, category=category)
            db.add(memory)
            db.commit()
            db.refresh(memory)
            return str(memory.id)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def build_memory_digest(records: List[MemoryRecord], max_chars: int = 2000) -> str:
    digest = "\n".join(f"- {record.text}" for record in records if record.text)
    return digest[:max_chars]


def search_memories_safely(
    index: Optional[MemoryIndex],
    user_id: Optional[str],
    query: str,
    *,
    limit: int = 20,
    timeout_seconds: Optional[float] = None,
    executor: Optional[Executor] = None,
) -> List[MemoryRecord]:
    """Search the memory index, degrading to an empty list on any failure or timeout."""
    if index is None or not user_id:
        return []
    try:
        if executor is not None and timeout_seconds:
            future = executor.submit(index.search, user_id, query, limit)
            try:
                return future.result(timeout=timeout_seconds)
            except FutureTimeoutError:
                future.cancel()
                logger.warning(
                    "Memory lookup timed out",
                    extra={"context": {"user_id": user_id, "timeout_seconds": timeout_seconds}},
                )
                return []
        return index.search(user_id, query, limit)
    except Exception as exc:
        logger.warning("Memory lookup failed", extra={"context": {"user_id": user_id, "error": str(exc)}})
        return []
