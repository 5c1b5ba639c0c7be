"""Wiring of the long-lived service objects and their FastAPI dependencies."""

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from fastapi import HTTPException, Request, status
from sqlalchemy.orm import Session

from omi_assistant.config import Settings
from omi_assistant.database import SessionLocal
from omi_assistant.services.background_queue import BackgroundQueue
from omi_assistant.services.dedup_service import Deduplicator
from omi_assistant.services.llm import LLMProvider, OpenAIProvider
from omi_assistant.services.memory_index import DatabaseMemoryIndex, MemoryIndex
from omi_assistant.services.notification_service import OmiNotificationClient
from omi_assistant.services.persistence_service import build_job_handlers
from omi_assistant.services.rate_limiter import NotificationRateLimiter
from omi_assistant.services.session_cache import SessionMetadataCache
from omi_assistant.services.session_service import make_snapshot_loader
from omi_assistant.services.webhook_orchestrator import WebhookOrchestrator


@dataclass
class Runtime:
    settings: Settings
    cache: SessionMetadataCache
    deduplicator: Deduplicator
    rate_limiter: NotificationRateLimiter
    queue: BackgroundQueue
    orchestrator: WebhookOrchestrator


def build_runtime(
    settings: Settings,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    llm: Optional[LLMProvider] = None,
    memory_index: Optional[MemoryIndex] = None,
    notifier: Optional[OmiNotificationClient] = None,
) -> Runtime:
    cache = SessionMetadataCache(
        make_snapshot_loader(session_factory, settings),
        ttl_seconds=settings.session_cache_ttl_seconds,
        max_entries=settings.session_cache_max_entries,
    )
    deduplicator = Deduplicator(
        cooldown_seconds=settings.dedup_cooldown_seconds,
        min_containment_ratio=settings.dedup_min_containment_ratio,
        retention_seconds=max(settings.dedup_retention_seconds, settings.default_followup_window_ms / 1000.0),
        max_entries=settings.dedup_max_entries,
    )
    rate_limiter = NotificationRateLimiter(
        max_per_window=settings.notification_max_per_window,
        window_seconds=settings.notification_window_seconds,
        max_users=settings.notification_max_tracked_users,
    )

    if memory_index is None:
        memory_index = DatabaseMemoryIndex(session_factory)
    handlers = build_job_handlers(
        memory_dedup_window=timedelta(hours=settings.memory_dedup_window_hours),
        memory_mirror=None if memory_index.backed_by_store else memory_index,
    )
    queue = BackgroundQueue(
        handlers,
        session_factory,
        batch_size=settings.queue_batch_size,
        interval_seconds=settings.queue_interval_seconds,
        max_attempts=settings.queue_max_attempts,
        retry_backoff_seconds=settings.queue_retry_backoff_seconds,
        max_pending=settings.queue_max_pending,
    )

    if llm is None:
        llm = OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.openai_model,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.completion_timeout_seconds,
            max_output_tokens=settings.completion_max_tokens,
            instructions=settings.assistant_instructions,
            fallback_model=settings.openai_fallback_model or None,
        )
    if notifier is None:
        notifier = OmiNotificationClient(
            app_id=settings.omi_app_id,
            app_secret=settings.omi_app_secret,
            api_url=settings.omi_api_url,
            timeout_seconds=settings.omi_notification_timeout_seconds,
        )

    orchestrator = WebhookOrchestrator(
        settings=settings,
        cache=cache,
        deduplicator=deduplicator,
        rate_limiter=rate_limiter,
        queue=queue,
        llm=llm,
        memory_index=memory_index,
        notifier=notifier,
    )
    return Runtime(
        settings=settings,
        cache=cache,
        deduplicator=deduplicator,
        rate_limiter=rate_limiter,
        queue=queue,
        orchestrator=orchestrator,
    )


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting")
    return runtime


def get_orchestrator(request: Request) -> WebhookOrchestrator:
    return get_runtime(request).orchestrator
