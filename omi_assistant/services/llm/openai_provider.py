from typing import Optional

import httpx

from omi_assistant.logging_config import get_logger
from omi_assistant.services.errors import UpstreamServiceError
from omi_assistant.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.openai")


def extract_output_text(data: dict) -> str:
    """Pull the assistant text out of a Responses API payload."""
    if data.get("output_text"):
        return str(data["output_text"])
    parts = []
    for item in data.get("output") or []:
        if item.get("type") != "message":
            continue
        for content in item.get("content") or []:
            if content.get("type") in ("output_text", "text") and content.get("text"):
                parts.append(content["text"])
    return "".join(parts)


class OpenAIProvider(LLMProvider):
    """OpenAI Responses API provider with Conversations API context handles.

    When the Responses call fails, a plain Chat Completions call is tried once
    before the error reaches the caller.
    """

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 8.0,
        max_output_tokens: int = 500,
        instructions: Optional[str] = None,
        fallback_model: Optional[str] = "gpt-4o",
        fallback_max_tokens: int = 800,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_output_tokens = max_output_tokens
        self.instructions = instructions
        self.fallback_model = fallback_model
        self.fallback_max_tokens = fallback_max_tokens

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, payload: dict) -> dict:
        if not self.api_key:
            raise UpstreamServiceError("completion", "OpenAI API key is not configured")
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(f"{self.base_url}{path}", headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            logger.error(f"OpenAI request failed: {exc}")
            raise UpstreamServiceError("completion", str(exc)) from exc

        logger.debug(f"OpenAI response status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise UpstreamServiceError("completion", f"OpenAI API error: {response.status_code} - {response.text}")
        return response.json()

    def complete(
        self,
        input: str,
        context_handle: Optional[str] = None,
        system_context: Optional[str] = None,
    ) -> LLMResponse:
        instructions = "\n\n".join(part for part in (self.instructions, system_context) if part)
        payload = {
            "model": self.default_model,
            "input": input,
            "max_output_tokens": self.max_output_tokens,
        }
        if instructions:
            payload["instructions"] = instructions
        if context_handle:
            payload["conversation"] = context_handle
        logger.debug(f"OpenAI request: model={self.default_model}, has_context={bool(context_handle)}")

        try:
            data = self._post("/responses", payload)
        except UpstreamServiceError as exc:
            if not self.fallback_model or not self.api_key:
                raise
            logger.warning(f"Responses API failed, falling back to chat completions: {exc.message}")
            return self._complete_chat(input, instructions, context_handle)

        content = extract_output_text(data).strip()
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        conversation = data.get("conversation")
        if isinstance(conversation, dict):
            conversation = conversation.get("id")
        return LLMResponse(
            content=content,
            model=data.get("model", self.default_model),
            context_handle=conversation or context_handle,
            usage=data.get("usage"),
        )

    def _complete_chat(self, input: str, instructions: str, context_handle: Optional[str]) -> LLMResponse:
        """Stateless Chat Completions call; the context handle is passed through unchanged."""
        payload = {
            "model": self.fallback_model,
            "messages": [
                {"role": "system", "content": instructions or "You are a helpful assistant."},
                {"role": "user", "content": input},
            ],
            "max_tokens": self.fallback_max_tokens,
            "temperature": 0.7,
        }
        data = self._post("/chat/completions", payload)
        choices = data.get("choices") or [{}]
        content = ((choices[0].get("message") or {}).get("content") or "").strip()
        logger.debug(f"Chat completions content: {content[:100] if content else 'EMPTY'}")
        return LLMResponse(
            content=content,
            model=data.get("model", self.fallback_model),
            context_handle=context_handle,
            usage=data.get("usage"),
        )

    def create_context_handle(self, metadata: Optional[dict] = None) -> str:
        payload = {}
        if metadata:
            # Conversations API metadata values must be strings
            payload["metadata"] = {str(k): str(v) for k, v in metadata.items() if v is not None}
        data = self._post("/conversations", payload)
        handle = data.get("id")
        if not handle:
            raise UpstreamServiceError("completion", "Conversations API returned no id")
        logger.info(f"Conversation context created: {handle}")
        return handle
