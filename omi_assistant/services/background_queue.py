"""In-process queue for durable writes that must not delay the webhook reply.

Jobs are buffered in a bounded deque, picked up by one worker thread in
batches, grouped per entity, and retried with backoff. Delivery is
at-least-once, so every handler has to be idempotent.
"""

import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.orm import Session

from omi_assistant.logging_config import get_logger
from omi_assistant.services.errors import PersistenceError

logger = get_logger("background_queue")


class JobType(str, Enum):
    SESSION_UPSERT = "SESSION_UPSERT"
    TRANSCRIPT_APPEND = "TRANSCRIPT_APPEND"
    CONVERSATION_TURN_SAVE = "CONVERSATION_TURN_SAVE"
    MEMORY_SAVE = "MEMORY_SAVE"
    CONTEXT_WINDOW_UPDATE = "CONTEXT_WINDOW_UPDATE"


ENTITY_KEY_FIELDS = {
    JobType.SESSION_UPSERT: "session_id",
    JobType.TRANSCRIPT_APPEND: "session_id",
    JobType.CONVERSATION_TURN_SAVE: "session_id",
    JobType.MEMORY_SAVE: "user_id",
    JobType.CONTEXT_WINDOW_UPDATE: "user_id",
}

# Job types whose handler accepts several payloads for one entity as a single bulk write
BULK_JOB_TYPES = frozenset({JobType.TRANSCRIPT_APPEND})

JobHandler = Callable[[Session, list[dict[str, Any]]], None]


@dataclass
class BackgroundJob:
    type: JobType
    payload: dict[str, Any]
    attempts: int = 0
    enqueued_at: float = field(default_factory=time.time)
    next_attempt_at: float = 0.0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def entity_key(self) -> str:
        field_name = ENTITY_KEY_FIELDS.get(self.type)
        value = self.payload.get(field_name) if field_name else None
        return str(value) if value is not None else self.id


def group_batch(batch: list[BackgroundJob]) -> list[list[BackgroundJob]]:
    """Split a batch into execution units, keeping enqueue order per entity.

    Bulk-capable jobs for the same (type, entity) collapse into one unit placed
    at the position of the first of them. Every other job is its own unit.
    """
    groups: dict[tuple[str, str], list[BackgroundJob]] = {}
    for job in batch:
        if job.type in BULK_JOB_TYPES:
            key = (job.type.value, job.entity_key)
        else:
            key = (job.type.value, job.id)
        groups.setdefault(key, []).append(job)
    return list(groups.values())


class BackgroundQueue:
    def __init__(
        self,
        handlers: dict[JobType, JobHandler],
        session_factory: Callable[[], Session],
        *,
        batch_size: int = 50,
        interval_seconds: float = 0.05,
        max_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        max_pending: int = 10000,
        clock: Callable[[], float] = time.time,
    ):
        self._handlers = dict(handlers)
        self._session_factory = session_factory
        self.batch_size = max(1, batch_size)
        self.interval_seconds = max(interval_seconds, 0.01)
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_pending = max(1, max_pending)
        self._clock = clock

        self._pending: deque[BackgroundJob] = deque()
        self._cond = threading.Condition()
        self._batch_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_requested = False
        self._drain_deadline = 0.0

        self.processed = 0
        self.failed = 0
        self.retried = 0
        self.dropped = 0
        self.abandoned = 0

    # Producer side

    def enqueue(self, job: BackgroundJob) -> None:
        with self._cond:
            if len(self._pending) >= self.max_pending:
                oldest = self._pending.popleft()
                self.dropped += 1
                logger.warning(
                    "Background queue full, dropping oldest job",
                    extra={"context": {"job_id": oldest.id, "job_type": oldest.type.value, "pending": len(self._pending)}},
                )
            self._pending.append(job)
        logger.debug(f"Job enqueued: {job.type.value} ({len(self._pending)} jobs in queue)")

    def enqueue_many(self, jobs: Iterable[BackgroundJob]) -> None:
        for job in jobs:
            self.enqueue(job)

    # Consumer side

    def _take_batch(self, force: bool) -> list[BackgroundJob]:
        now = self._clock()
        batch: list[BackgroundJob] = []
        deferred: list[BackgroundJob] = []
        with self._cond:
            scanned = 0
            limit = len(self._pending)
            while self._pending and len(batch) < self.batch_size and scanned < limit:
                job = self._pending.popleft()
                scanned += 1
                if not force and job.next_attempt_at > now:
                    deferred.append(job)
                    continue
                batch.append(job)
            self._pending.extendleft(reversed(deferred))
        return batch

    def process_batch(self, force: bool = False) -> int:
        """Run one batch of due jobs. Returns the number of jobs executed."""
        if not self._batch_lock.acquire(blocking=False):
            return 0
        try:
            batch = self._take_batch(force or self._stop_requested)
            if not batch:
                return 0
            for group in group_batch(batch):
                self._execute_group(group)
            return len(batch)
        finally:
            self._batch_lock.release()

    def _execute_group(self, group: list[BackgroundJob]) -> None:
        job_type = group[0].type
        for job in group:
            job.attempts += 1

        handler = self._handlers.get(job_type)
        if handler is None:
            logger.warning(f"Unknown job type: {job_type.value}, dropping {len(group)} job(s)")
            self.failed += len(group)
            return

        db = None
        try:
            db = self._session_factory()
            handler(db, [job.payload for job in group])
            db.commit()
            self.processed += len(group)
        except Exception as exc:
            if db is not None:
                db.rollback()
            error = exc if isinstance(exc, PersistenceError) else PersistenceError(job_type.value, str(exc))
            for job in group:
                self._retry_or_drop(job, error)
        finally:
            if db is not None:
                db.close()

    def _retry_or_drop(self, job: BackgroundJob, error: PersistenceError) -> None:
        context = {
            "job_id": job.id,
            "job_type": job.type.value,
            "attempts": job.attempts,
            "entity": job.entity_key,
            "error": error.message[:500],
        }
        if job.attempts >= self.max_attempts:
            self.failed += 1
            logger.error("Background job dropped after retries", extra={"context": context})
            return
        job.next_attempt_at = self._clock() + self.retry_backoff_seconds * job.attempts
        self.retried += 1
        logger.warning("Background job failed, retry scheduled", extra={"context": context})
        with self._cond:
            self._pending.append(job)

    # Lifecycle

    def _run(self) -> None:
        while True:
            if self._stop_requested:
                with self._cond:
                    remaining = len(self._pending)
                if not remaining or time.monotonic() >= self._drain_deadline:
                    break
            try:
                executed = self.process_batch()
            except Exception as exc:
                logger.error("Background queue loop failed", extra={"context": {"error": str(exc)}})
                executed = 0
            if executed == 0:
                with self._cond:
                    if not self._stop_requested:
                        self._cond.wait(timeout=self.interval_seconds)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_requested = False
        self._thread = threading.Thread(target=self._run, name="background-queue", daemon=True)
        self._thread.start()
        logger.info("Background queue started", extra={"context": {"batch_size": self.batch_size}})

    def stop(self, timeout: float = 5.0) -> int:
        """Drain pending jobs for at most ``timeout`` seconds, then abandon the rest.

        Returns the number of abandoned jobs.
        """
        self._drain_deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            self._stop_requested = True
            self._cond.notify_all()

        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout + self.interval_seconds + 1.0)
        else:
            while self._pending and time.monotonic() < self._drain_deadline:
                if self.process_batch(force=True) == 0:
                    break

        with self._cond:
            abandoned = len(self._pending)
            self._pending.clear()
        self.abandoned += abandoned
        self._thread = None
        if abandoned:
            logger.error(f"Background queue stopped with {abandoned} unprocessed job(s) abandoned")
        else:
            logger.info("Background queue stopped")
        return abandoned

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def __len__(self) -> int:
        return len(self._pending)

    def status(self) -> dict[str, Any]:
        return {
            "pending": len(self._pending),
            "running": self.is_running,
            "batch_size": self.batch_size,
            "processed": self.processed,
            "failed": self.failed,
            "retried": self.retried,
            "dropped": self.dropped,
            "abandoned": self.abandoned,
        }
