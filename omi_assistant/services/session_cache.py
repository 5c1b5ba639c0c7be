"""Read-through cache of per-session metadata used for activation decisions.

Writes never go through here: the background queue owns persistence, so a
cached snapshot may lag the store by up to one TTL.
"""

import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Optional

from omi_assistant.logging_config import get_logger
from omi_assistant.services.activation_service import ActivationConfig
from omi_assistant.services.keyed_locks import KeyedLocks

logger = get_logger("session_cache")

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 1000


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    exists: bool = False
    linked_user_id: Optional[str] = None
    resolved_user_id: Optional[str] = None
    conversation_handle: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    activation: ActivationConfig = field(default_factory=ActivationConfig)


SnapshotLoader = Callable[[str, Optional[str]], SessionSnapshot]


@dataclass
class _CacheEntry:
    snapshot: SessionSnapshot
    stored_at: float


class SessionMetadataCache:
    def __init__(
        self,
        loader: SnapshotLoader,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
        lock_stripes: int = 64,
    ):
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[tuple[str, Optional[str]], _CacheEntry] = {}
        self._locks = KeyedLocks(lock_stripes)
        self.hits = 0
        self.misses = 0

    def get(self, session_id: str, candidate_user_id: Optional[str] = None) -> SessionSnapshot:
        key = (session_id, candidate_user_id)
        with self._locks.for_key(session_id):
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None and now - entry.stored_at < self.ttl_seconds:
                self.hits += 1
                return entry.snapshot

            self.misses += 1
            # Loader errors propagate and nothing is cached
            snapshot = self._loader(session_id, candidate_user_id)
            self._entries[key] = _CacheEntry(snapshot=snapshot, stored_at=now)

        if len(self._entries) > self.max_entries:
            self.sweep()
        return snapshot

    def sweep(self) -> int:
        """Drop entries older than the TTL. The size bound is soft."""
        now = self._clock()
        expired = [key for key, entry in list(self._entries.items()) if now - entry.stored_at >= self.ttl_seconds]
        for key in expired:
            with self._locks.for_key(key[0]):
                entry = self._entries.get(key)
                if entry is not None and now - entry.stored_at >= self.ttl_seconds:
                    del self._entries[key]
        if expired:
            logger.debug(f"Session cache sweep removed {len(expired)} entries, {len(self._entries)} left")
        return len(expired)

    def remember_conversation_handle(self, session_id: str, handle: str) -> None:
        """Patch cached snapshots so the next fragment reuses a freshly created handle."""
        with self._locks.for_key(session_id):
            for key in [key for key in list(self._entries) if key[0] == session_id]:
                entry = self._entries.get(key)
                if entry is None:
                    continue
                entry.snapshot = replace(entry.snapshot, conversation_handle=handle)

    def invalidate(self, session_id: str) -> None:
        with self._locks.for_key(session_id):
            for key in [key for key in list(self._entries) if key[0] == session_id]:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
