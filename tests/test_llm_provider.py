from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest

from omi_assistant.services.errors import UpstreamServiceError
from omi_assistant.services.llm.openai_provider import OpenAIProvider, extract_output_text


def _mock_http(mock_client_class, status_code=200, payload=None, text=""):
    mock_client = MagicMock()
    mock_client_class.return_value.__enter__.return_value = mock_client
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_response.json.return_value = payload or {}
    mock_response.text = text
    mock_client.post.return_value = mock_response
    return mock_client


class TestExtractOutputText:
    def test_prefers_output_text(self):
        assert extract_output_text({"output_text": "hi"}) == "hi"

    def test_joins_message_parts(self):
        data = {
            "output": [
                {"type": "reasoning", "summary": []},
                {"type": "message", "content": [{"type": "output_text", "text": "Sunny "}, {"type": "output_text", "text": "today."}]},
            ]
        }
        assert extract_output_text(data) == "Sunny today."


class TestComplete:
    @patch("omi_assistant.services.llm.openai_provider.httpx.Client")
    def test_sends_input_with_context(self, mock_client_class):
        mock_client = _mock_http(mock_client_class, payload={"model": "gpt-4o-mini", "output_text": " Sunny. "})
        provider = OpenAIProvider(api_key="test-key", instructions="Be brief.")

        response = provider.complete("what's the weather", "conv_1", "Relevant memories:\n- lives in Oslo")

        assert response.content == "Sunny."
        assert response.context_handle == "conv_1"
        url = mock_client.post.call_args[0][0]
        payload = mock_client.post.call_args[1]["json"]
        assert url == "https://api.openai.com/v1/responses"
        assert payload["input"] == "what's the weather"
        assert payload["conversation"] == "conv_1"
        assert payload["instructions"] == "Be brief.\n\nRelevant memories:\n- lives in Oslo"

    @patch("omi_assistant.services.llm.openai_provider.httpx.Client")
    def test_http_error_raises_when_fallback_also_fails(self, mock_client_class):
        mock_client = _mock_http(mock_client_class, status_code=500, text="server error")
        with pytest.raises(UpstreamServiceError):
            OpenAIProvider(api_key="test-key").complete("hello")
        assert mock_client.post.call_count == 2

    @patch("omi_assistant.services.llm.openai_provider.httpx.Client")
    def test_timeout_raises_upstream_error(self, mock_client_class):
        mock_client = _mock_http(mock_client_class)
        mock_client.post.side_effect = httpx.ReadTimeout("timed out")
        with pytest.raises(UpstreamServiceError):
            OpenAIProvider(api_key="test-key").complete("hello")

    @patch("omi_assistant.services.llm.openai_provider.httpx.Client")
    def test_falls_back_to_chat_completions(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        failed = Mock(status_code=502, text="bad gateway")
        chat = Mock(status_code=200, text="")
        chat.json.return_value = {"model": "gpt-4o", "choices": [{"message": {"content": " Sunny. "}}]}
        mock_client.post.side_effect = [failed, chat]
        provider = OpenAIProvider(api_key="test-key", instructions="Be brief.")

        response = provider.complete("what's the weather", "conv_1", "Relevant memories:\n- lives in Oslo")

        assert response.content == "Sunny."
        assert response.model == "gpt-4o"
        assert response.context_handle == "conv_1"
        url = mock_client.post.call_args_list[1][0][0]
        payload = mock_client.post.call_args_list[1][1]["json"]
        assert url == "https://api.openai.com/v1/chat/completions"
        assert payload["messages"] == [
            {"role": "system", "content": "Be brief.\n\nRelevant memories:\n- lives in Oslo"},
            {"role": "user", "content": "what's the weather"},
        ]
        assert payload["max_tokens"] == 800

    @patch("omi_assistant.services.llm.openai_provider.httpx.Client")
    def test_fallback_disabled_raises(self, mock_client_class):
        mock_client = _mock_http(mock_client_class, status_code=500, text="server error")
        with pytest.raises(UpstreamServiceError):
            OpenAIProvider(api_key="test-key", fallback_model=None).complete("hello")
        assert mock_client.post.call_count == 1

    def test_missing_api_key(self):
        with pytest.raises(UpstreamServiceError):
            OpenAIProvider(api_key="").complete("hello")


class TestCreateContextHandle:
    @patch("omi_assistant.services.llm.openai_provider.httpx.Client")
    def test_returns_conversation_id(self, mock_client_class):
        mock_client = _mock_http(mock_client_class, payload={"id": "conv_abc"})

        handle = OpenAIProvider(api_key="test-key").create_context_handle({"session_id": "s1", "user_id": None})

        assert handle == "conv_abc"
        assert mock_client.post.call_args[0][0].endswith("/conversations")
        assert mock_client.post.call_args[1]["json"] == {"metadata": {"session_id": "s1"}}

    @patch("omi_assistant.services.llm.openai_provider.httpx.Client")
    def test_missing_id_raises(self, mock_client_class):
        _mock_http(mock_client_class, payload={})
        with pytest.raises(UpstreamServiceError):
            OpenAIProvider(api_key="test-key").create_context_handle()
