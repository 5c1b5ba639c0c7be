from typing import Optional


class AssistantError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(AssistantError):
    """Structurally invalid webhook payload. Maps to HTTP 400."""

    def __init__(self, message: str, fields: Optional[list[str]] = None):
        self.fields = fields or []
        super().__init__(message)


class UpstreamServiceError(AssistantError):
    """Completion service, memory index or notification API failed."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class RateLimitExceeded(AssistantError):
    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Rate limit exceeded, retry in {retry_after_seconds}s")


class PersistenceError(AssistantError):
    def __init__(self, job_type: str, message: str):
        self.job_type = job_type
        super().__init__(f"{job_type}: {message}")
