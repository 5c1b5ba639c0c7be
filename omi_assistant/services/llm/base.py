from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    context_handle: Optional[str] = None
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Abstract base class for completion providers with server-side context."""

    @abstractmethod
    def complete(
        self,
        input: str,
        context_handle: Optional[str] = None,
        system_context: Optional[str] = None,
    ) -> LLMResponse:
        """Generate a reply to ``input`` within the given conversation context."""
        pass

    @abstractmethod
    def create_context_handle(self, metadata: Optional[dict] = None) -> str:
        """Open a new stateful conversation and return its handle."""
        pass
