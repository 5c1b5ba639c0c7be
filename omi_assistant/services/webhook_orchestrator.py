"""Per-request pipeline for inbound transcript webhooks.

``handle`` runs on the request thread and only does in-memory decisioning
plus the bounded completion call. Durable writes and the outbound
notification are deferred to ``finalize``, which runs after the response has
been sent.
"""

import re
import time
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import timezone, tzinfo
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from omi_assistant.config import Settings
from omi_assistant.logging_config import LoggerAdapter, get_logger
from omi_assistant.schemas.webhook import WebhookRequest
from omi_assistant.services.activation_service import ActivationDecision, evaluate_activation
from omi_assistant.services.background_queue import BackgroundJob, BackgroundQueue, JobType
from omi_assistant.services.dedup_service import Deduplicator
from omi_assistant.services.errors import RateLimitExceeded, ValidationError
from omi_assistant.services.llm.base import LLMProvider
from omi_assistant.services.memory_index import MemoryIndex, build_memory_digest, search_memories_safely
from omi_assistant.services.notification_service import OmiNotificationClient
from omi_assistant.services.rate_limiter import NotificationRateLimiter
from omi_assistant.services.session_cache import SessionMetadataCache, SessionSnapshot
from omi_assistant.services.session_service import default_snapshot
from omi_assistant.services.state_machine import RequestState, gate, transition

logger = get_logger("webhook_orchestrator")

APOLOGY_MESSAGE = "I'm sorry, please try again later."
MEETING_SAVED_MESSAGE = "Meeting transcribed and saved."

REMEMBER_RE = re.compile(r"^\s*(?:please\s+)?remember\b(?:\s+that)?\s*[,:\-]?\s*(?P<text>.+)$", re.IGNORECASE)


def extract_memory_text(utterance: str) -> Optional[str]:
    """Return the fact to store for "remember ..." requests."""
    match = REMEMBER_RE.match(utterance or "")
    if not match:
        return None
    text = match.group("text").strip().rstrip(".!")
    return text or None


def resolve_timezone(name: Optional[str]) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown quiet hours timezone '{name}', using UTC")
        return timezone.utc


@dataclass
class PendingNotification:
    uid: str
    message: str


@dataclass
class WebhookOutcome:
    session_id: str
    state: RequestState
    message: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    jobs: list[BackgroundJob] = field(default_factory=list)
    notification: Optional[PendingNotification] = None
    reason: str = ""

    def to_response(self) -> dict:
        payload = {}
        if self.message is not None:
            payload["message"] = self.message
        if self.retry_after_seconds:
            payload["retryAfterSeconds"] = self.retry_after_seconds
        return payload


@dataclass
class _CompletionResult:
    message: str
    context_handle: Optional[str]
    succeeded: bool


class WebhookOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        cache: SessionMetadataCache,
        deduplicator: Deduplicator,
        rate_limiter: NotificationRateLimiter,
        queue: BackgroundQueue,
        llm: LLMProvider,
        memory_index: Optional[MemoryIndex] = None,
        notifier: Optional[OmiNotificationClient] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.cache = cache
        self.deduplicator = deduplicator
        self.rate_limiter = rate_limiter
        self.queue = queue
        self.llm = llm
        self.memory_index = memory_index
        self.notifier = notifier
        self._executor = executor or ThreadPoolExecutor(max_workers=16, thread_name_prefix="omi-upstream")
        self._clock = clock
        self._tz = resolve_timezone(settings.quiet_hours_timezone)

    # Request path

    def handle(self, request: WebhookRequest) -> WebhookOutcome:
        state = RequestState.RECEIVED
        self._validate(request)
        session_id = request.session_id
        log = LoggerAdapter(logger, {"session_id": session_id})

        snapshot = self._resolve_snapshot(session_id, request.device_user_id, log)
        state = transition(state, RequestState.METADATA_RESOLVED)
        now = self._clock()
        user_id = snapshot.resolved_user_id
        if user_id:
            log = log.bind(user_id=user_id)

        if snapshot.activation.meeting_transcribe:
            state = gate(state, False)
            jobs = [
                self._session_job(session_id, user_id, now),
                self._transcript_job(session_id, request),
            ]
            message = MEETING_SAVED_MESSAGE if request.end_signal else None
            log.info("Meeting transcript captured", context={"end_signal": request.end_signal})
            return WebhookOutcome(session_id, state, message=message, jobs=jobs, reason="meeting_transcribe")

        decision = evaluate_activation(
            request.texts,
            snapshot.activation,
            now_ts=now,
            last_accepted_ts=self.deduplicator.last_accepted_at(session_id),
            tz=self._tz,
            quiet_hours_enabled=self.settings.quiet_hours_enabled,
        )
        reason = decision.reason
        accepted = decision.should_respond
        if accepted and not self.deduplicator.check_and_record(session_id, decision.utterance):
            accepted = False
            reason = "duplicate"

        state = gate(state, accepted)
        if not accepted:
            jobs = [self._session_job(session_id, user_id, now)]
            if self.settings.persist_suppressed_transcripts:
                jobs.append(self._transcript_job(session_id, request))
            log.debug(f"Request suppressed: {reason}")
            return WebhookOutcome(session_id, state, jobs=jobs, reason=reason)

        log.info("Request activated", context={"reason": reason, "utterance": decision.utterance[:120]})
        state = transition(state, RequestState.COMPLETION_CALLED)
        completion = self._complete(session_id, user_id, decision, snapshot, log)

        if completion.context_handle and completion.context_handle != snapshot.conversation_handle:
            self.cache.remember_conversation_handle(session_id, completion.context_handle)

        outcome = WebhookOutcome(session_id, state, message=completion.message, reason=reason)
        outcome.jobs = self._activated_jobs(session_id, user_id, now, request, decision, completion)
        # The apology is only returned inline, never pushed
        if completion.succeeded:
            self._gate_notification(outcome, request.device_user_id, log)
        outcome.state = transition(outcome.state, RequestState.RESPONDED)
        return outcome

    def _validate(self, request: WebhookRequest) -> None:
        missing = []
        if not request.session_id:
            missing.append("sessionId")
        if not request.fragments:
            missing.append("fragments")
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}", fields=missing)

    def _resolve_snapshot(self, session_id: str, candidate_user_id: Optional[str], log) -> SessionSnapshot:
        try:
            return self.cache.get(session_id, candidate_user_id)
        except Exception as exc:
            log.warning("Session metadata unavailable, using defaults", context={"error": str(exc)})
            return default_snapshot(session_id, self.settings)

    def _memory_context(self, user_id: Optional[str], query: str, snapshot: SessionSnapshot) -> Optional[str]:
        if not snapshot.activation.inject_memories or not user_id:
            return None
        records = search_memories_safely(
            self.memory_index,
            user_id,
            query,
            limit=self.settings.memory_lookup_limit,
            timeout_seconds=self.settings.memory_lookup_timeout_seconds,
            executor=self._executor,
        )
        digest = build_memory_digest(records, self.settings.memory_digest_max_chars)
        return f"Relevant memories:\n{digest}" if digest else None

    def _complete(
        self,
        session_id: str,
        user_id: Optional[str],
        decision: ActivationDecision,
        snapshot: SessionSnapshot,
        log,
    ) -> _CompletionResult:
        system_context = self._memory_context(user_id, decision.utterance, snapshot)
        # Filled from the worker thread so a handle created before a timeout is still kept
        handle_box = {"handle": snapshot.conversation_handle}

        def call() -> str:
            if not handle_box["handle"]:
                handle_box["handle"] = self.llm.create_context_handle({"session_id": session_id, "user_id": user_id})
            response = self.llm.complete(decision.utterance, handle_box["handle"], system_context)
            if response.context_handle:
                handle_box["handle"] = response.context_handle
            return response.content

        future = self._executor.submit(call)
        try:
            content = future.result(timeout=self.settings.completion_timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            log.warning(
                "Completion timed out",
                context={"timeout_seconds": self.settings.completion_timeout_seconds},
            )
            return _CompletionResult(APOLOGY_MESSAGE, handle_box["handle"], succeeded=False)
        except Exception as exc:
            log.error("Completion failed", context={"error": str(exc)})
            return _CompletionResult(APOLOGY_MESSAGE, handle_box["handle"], succeeded=False)

        if not content:
            log.warning("Completion returned empty content")
            return _CompletionResult(APOLOGY_MESSAGE, handle_box["handle"], succeeded=False)
        return _CompletionResult(content, handle_box["handle"], succeeded=True)

    def _notifications_active(self) -> bool:
        return (
            self.settings.notifications_enabled
            and self.notifier is not None
            and self.notifier.is_configured
        )

    def _gate_notification(self, outcome: WebhookOutcome, device_user_id: Optional[str], log) -> None:
        if not device_user_id or not self._notifications_active():
            return
        try:
            self.rate_limiter.consume(device_user_id)
        except RateLimitExceeded as exc:
            outcome.retry_after_seconds = exc.retry_after_seconds
            log.info("Notification suppressed by rate limit", context={"retry_after_seconds": exc.retry_after_seconds})
            return
        outcome.notification = PendingNotification(uid=device_user_id, message=outcome.message)

    # Job construction

    def _session_job(self, session_id: str, user_id: Optional[str], now: float, handle: Optional[str] = None) -> BackgroundJob:
        return BackgroundJob(
            type=JobType.SESSION_UPSERT,
            payload={
                "session_id": session_id,
                "user_id": user_id,
                "conversation_handle": handle,
                "last_seen_at": now,
            },
        )

    def _transcript_job(self, session_id: str, request: WebhookRequest) -> BackgroundJob:
        return BackgroundJob(
            type=JobType.TRANSCRIPT_APPEND,
            payload={"session_id": session_id, "segments": request.segments()},
        )

    def _activated_jobs(
        self,
        session_id: str,
        user_id: Optional[str],
        now: float,
        request: WebhookRequest,
        decision: ActivationDecision,
        completion: _CompletionResult,
    ) -> list[BackgroundJob]:
        jobs = [
            self._session_job(session_id, user_id, now, completion.context_handle),
            self._transcript_job(session_id, request),
        ]
        if not completion.succeeded:
            return jobs

        jobs.append(
            BackgroundJob(
                type=JobType.CONVERSATION_TURN_SAVE,
                payload={
                    "session_id": session_id,
                    "user_id": user_id,
                    "conversation_handle": completion.context_handle,
                    "question": decision.utterance,
                    "answer": completion.message,
                    "turn_id": uuid.uuid4().hex,
                },
            )
        )
        if not user_id:
            return jobs

        jobs.append(
            BackgroundJob(
                type=JobType.CONTEXT_WINDOW_UPDATE,
                payload={
                    "user_id": user_id,
                    "session_id": session_id,
                    "conversation_handle": completion.context_handle,
                },
            )
        )
        memory_text = extract_memory_text(decision.utterance)
        if memory_text:
            jobs.append(
                BackgroundJob(
                    type=JobType.MEMORY_SAVE,
                    payload={"user_id": user_id, "text": memory_text, "category": "note"},
                )
            )
        return jobs

    # After the response

    def finalize(self, outcome: WebhookOutcome) -> WebhookOutcome:
        """Hand jobs to the queue and deliver the notification. Never raises."""
        if outcome.jobs:
            self.queue.enqueue_many(outcome.jobs)
        if outcome.state == RequestState.RESPONDED:
            outcome.state = transition(outcome.state, RequestState.JOBS_ENQUEUED)

        if outcome.notification is not None and self.notifier is not None:
            try:
                self.notifier.send(outcome.notification.uid, outcome.notification.message)
            except Exception as exc:
                logger.error(
                    "Notification delivery failed",
                    extra={"context": {"session_id": outcome.session_id, "error": str(exc)}},
                )
        return outcome

    def shutdown(self) -> None:
        if isinstance(self._executor, ThreadPoolExecutor):
            self._executor.shutdown(wait=False)
