from omi_assistant.schemas.webhook import (
    QueueStatusResponse,
    RateLimitStatusResponse,
    TranscriptFragment,
    WebhookRequest,
    WebhookResponse,
)

__all__ = [
    "TranscriptFragment",
    "WebhookRequest",
    "WebhookResponse",
    "RateLimitStatusResponse",
    "QueueStatusResponse",
]
