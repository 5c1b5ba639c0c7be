from fastapi import APIRouter, Depends

from omi_assistant.dependencies import Runtime, get_runtime
from omi_assistant.schemas.webhook import QueueStatusResponse, RateLimitStatusResponse

router = APIRouter(tags=["status"])


@router.get("/rate-limit/{user_id}", response_model=RateLimitStatusResponse)
def rate_limit_status(user_id: str, runtime: Runtime = Depends(get_runtime)):
    """Notification budget left for a device user in the current window."""
    current = runtime.rate_limiter.status(user_id)
    return RateLimitStatusResponse(
        user_id=user_id,
        limit=current.limit,
        used=current.used,
        remaining=current.remaining,
        retry_after_seconds=current.retry_after_seconds,
        limited=current.is_limited,
    )


@router.get("/queue/status", response_model=QueueStatusResponse)
def queue_status(runtime: Runtime = Depends(get_runtime)):
    return QueueStatusResponse(**runtime.queue.status())
