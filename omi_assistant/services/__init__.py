from omi_assistant.services.activation_service import (
    ActivationConfig,
    ActivationDecision,
    ListenMode,
    evaluate_activation,
    merge_activation_config,
)
from omi_assistant.services.background_queue import BackgroundJob, BackgroundQueue, JobType
from omi_assistant.services.dedup_service import Deduplicator
from omi_assistant.services.rate_limiter import NotificationRateLimiter
from omi_assistant.services.session_cache import SessionMetadataCache, SessionSnapshot
from omi_assistant.services.state_machine import (
    InvalidTransitionError,
    RequestState,
    can_transition,
    transition,
)
from omi_assistant.services.webhook_orchestrator import WebhookOrchestrator, WebhookOutcome
