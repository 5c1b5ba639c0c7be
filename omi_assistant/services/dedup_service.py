import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from omi_assistant.logging_config import get_logger
from omi_assistant.services.keyed_locks import KeyedLocks

logger = get_logger("dedup")

DEFAULT_COOLDOWN_SECONDS = 10.0
DEFAULT_RETENTION_SECONDS = 600.0
DEFAULT_MAX_ENTRIES = 1000

_WHITESPACE_RE = re.compile(r"\s+")
_TRAILING_PUNCT_RE = re.compile(r"[\s.,!?;:]+$")


@dataclass(frozen=True)
class DedupEntry:
    session_id: str
    normalized_text: str
    timestamp: float


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, collapse whitespace, strip trailing punctuation."""
    normalized = _WHITESPACE_RE.sub(" ", (text or "").lower()).strip()
    return _TRAILING_PUNCT_RE.sub("", normalized)


def is_near_duplicate(a: str, b: str, min_ratio: float = 0.0) -> bool:
    """Exact match, or one string contained in the other.

    ``min_ratio`` is the minimum shorter/longer length ratio for containment to
    count. With 0.0 any containment is a duplicate, so a short new utterance
    that happens to appear inside a recent long one is suppressed as well.
    """
    if not a or not b:
        return False
    if a == b:
        return True
    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    if shorter not in longer:
        return False
    return len(shorter) / len(longer) >= min_ratio


class Deduplicator:
    """Remembers the last accepted utterance per session."""

    def __init__(
        self,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        min_containment_ratio: float = 0.0,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
        lock_stripes: int = 64,
    ):
        self.cooldown_seconds = cooldown_seconds
        self.min_containment_ratio = min_containment_ratio
        # Entries also feed the followup window, so they outlive the cooldown
        self.retention_seconds = max(retention_seconds, cooldown_seconds)
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, DedupEntry] = {}
        self._locks = KeyedLocks(lock_stripes)

    def _is_duplicate_locked(self, session_id: str, normalized: str, now: float) -> bool:
        entry = self._entries.get(session_id)
        if entry is None:
            return False
        if now - entry.timestamp >= self.cooldown_seconds:
            return False
        return is_near_duplicate(entry.normalized_text, normalized, self.min_containment_ratio)

    def is_duplicate(self, session_id: str, utterance: str) -> bool:
        normalized = normalize_text(utterance)
        with self._locks.for_key(session_id):
            return self._is_duplicate_locked(session_id, normalized, self._clock())

    def record(self, session_id: str, utterance: str) -> DedupEntry:
        entry = DedupEntry(session_id=session_id, normalized_text=normalize_text(utterance), timestamp=self._clock())
        with self._locks.for_key(session_id):
            self._entries[session_id] = entry
        if len(self._entries) > self.max_entries:
            self.sweep()
        return entry

    def check_and_record(self, session_id: str, utterance: str) -> bool:
        """Record the utterance unless it duplicates the last one.

        Returns True when the utterance was accepted. Check and write happen
        under the same lock so two concurrent batches cannot both pass.
        """
        normalized = normalize_text(utterance)
        with self._locks.for_key(session_id):
            now = self._clock()
            if self._is_duplicate_locked(session_id, normalized, now):
                logger.info(
                    "Duplicate utterance suppressed",
                    extra={"context": {"session_id": session_id, "utterance": normalized[:80]}},
                )
                return False
            self._entries[session_id] = DedupEntry(session_id=session_id, normalized_text=normalized, timestamp=now)

        if len(self._entries) > self.max_entries:
            self.sweep()
        return True

    def last_accepted_at(self, session_id: str) -> Optional[float]:
        with self._locks.for_key(session_id):
            entry = self._entries.get(session_id)
        return entry.timestamp if entry else None

    def sweep(self) -> int:
        """Drop sessions idle for longer than the retention period."""
        now = self._clock()
        expired = [key for key, entry in list(self._entries.items()) if now - entry.timestamp >= self.retention_seconds]
        for session_id in expired:
            with self._locks.for_key(session_id):
                entry = self._entries.get(session_id)
                if entry is not None and now - entry.timestamp >= self.retention_seconds:
                    del self._entries[session_id]
        if expired:
            logger.debug(f"Dedup sweep removed {len(expired)} sessions, {len(self._entries)} left")
        return len(expired)

    def forget(self, session_id: str) -> None:
        with self._locks.for_key(session_id):
            self._entries.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._entries)
