"""Unit tests for LLMClient."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import json

import pytest
from unittest.mock import Mock, patch
from services.llm_client import LLMClient, LLMClientError, extract_keywords
from groq import RateLimitError, AuthenticationError, APIStatusError, APITimeoutError


def completion(content, prompt_tokens=100, completion_tokens=20):
    """Build a mock Groq chat completion."""
    response = Mock()
    response.choices = [Mock(message=Mock(content=content))]
    response.usage = Mock(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return response


@pytest.fixture
def groq_client():
    with patch('services.llm_client.Groq') as mock_groq_class:
        mock_client = Mock()
        mock_groq_class.return_value = mock_client
        yield mock_client


class TestLLMClient:
    """Test suite for LLMClient class."""

    def test_initialization_with_api_key(self, groq_client):
        client = LLMClient(api_key="test_key")
        assert client.api_key == "test_key"

    def test_initialization_without_api_key_raises_error(self):
        with patch('services.llm_client.GROQ_API_KEY', None):
            with pytest.raises(ValueError, match="GROQ_API_KEY must be provided"):
                LLMClient()

    def test_chat_success(self, groq_client):
        groq_client.chat.completions.create.return_value = completion("Lumbar MRI shows L4-L5 bulge.")
        client = LLMClient(api_key="test_key")

        response = client.chat([{"role": "user", "content": "Summarize the MRI"}])

        assert response.content == "Lumbar MRI shows L4-L5 bulge."
        assert response.provider == "groq"
        assert response.model == "llama-3.3-70b-versatile"
        assert response.tokens_input == 100
        assert response.tokens_output == 20
        assert response.latency_ms >= 0

    def test_chat_rejects_unknown_model(self, groq_client):
        client = LLMClient(api_key="test_key")
        with pytest.raises(ValueError, match="Unknown model"):
            client.chat([{"role": "user", "content": "hi"}], model="gpt-nothing")

    def test_chat_rejects_empty_messages(self, groq_client):
        client = LLMClient(api_key="test_key")
        with pytest.raises(ValueError):
            client.chat([])

    def test_rate_limit_error(self, groq_client):
        groq_client.chat.completions.create.side_effect = RateLimitError(
            message="Rate limit exceeded",
            response=Mock(status_code=429),
            body=None
        )
        client = LLMClient(api_key="test_key")

        with pytest.raises(LLMClientError) as exc_info:
            client.chat([{"role": "user", "content": "hi"}])

        error = exc_info.value.error
        assert error.code == "RATE_LIMIT_ERROR"
        assert error.message == "Rate limits exceeded, please try again later."
        assert error.details["retry_after"] == 60

    def test_payment_required_error(self, groq_client):
        groq_client.chat.completions.create.side_effect = APIStatusError(
            message="Payment required",
            response=Mock(status_code=402),
            body=None
        )
        client = LLMClient(api_key="test_key")

        with pytest.raises(LLMClientError) as exc_info:
            client.chat([{"role": "user", "content": "hi"}])

        assert exc_info.value.error.code == "QUOTA_EXHAUSTED"
        assert exc_info.value.error.message == "AI credits exhausted. Please add credits."

    def test_authentication_error(self, groq_client):
        groq_client.chat.completions.create.side_effect = AuthenticationError(
            message="Invalid API key",
            response=Mock(status_code=401),
            body=None
        )
        client = LLMClient(api_key="test_key")

        with pytest.raises(LLMClientError) as exc_info:
            client.chat([{"role": "user", "content": "hi"}])

        assert exc_info.value.error.code == "AUTHENTICATION_ERROR"

    def test_timeout_error(self, groq_client):
        groq_client.chat.completions.create.side_effect = APITimeoutError(request=Mock())
        client = LLMClient(api_key="test_key")

        with pytest.raises(LLMClientError) as exc_info:
            client.chat([{"role": "user", "content": "hi"}])

        assert exc_info.value.error.code == "TIMEOUT_ERROR"

    def test_unknown_error(self, groq_client):
        groq_client.chat.completions.create.side_effect = RuntimeError("boom")
        client = LLMClient(api_key="test_key")

        with pytest.raises(LLMClientError) as exc_info:
            client.chat([{"role": "user", "content": "hi"}])

        assert exc_info.value.error.code == "UNKNOWN_ERROR"
        assert exc_info.value.error.details["error_type"] == "RuntimeError"


class TestAnalyzePages:
    """Test suite for AI page analysis."""

    PDF_CONTENT = [{
        "fileName": "records.pdf",
        "fileIndex": 0,
        "pages": [{"pageNum": 1, "text": "MRI 03/20/2023"}, {"pageNum": 2, "text": "Billing"}],
    }]

    def test_parses_and_deduplicates_pages(self, groq_client):
        payload = {
            "relevantPages": [
                {"fileIndex": 0, "pageNum": 1, "reason": "MRI date"},
                {"fileIndex": 0, "pageNum": 1, "reason": "repeat"},
            ],
            "keywords": ["MRI", " 03/20/2023 ", ""],
        }
        groq_client.chat.completions.create.return_value = completion(json.dumps(payload))
        client = LLMClient(api_key="test_key")

        analysis = client.analyze_pages("MRI in March 2023", self.PDF_CONTENT)

        assert analysis.relevant_pages == [{"fileIndex": 0, "pageNum": 1, "reason": "MRI date"}]
        assert analysis.keywords == ["MRI", "03/20/2023"]
        kwargs = groq_client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "Page 1: MRI 03/20/2023" in kwargs["messages"][1]["content"]

    def test_strips_code_fences(self, groq_client):
        groq_client.chat.completions.create.return_value = completion(
            '```json\n{"relevantPages": [{"fileIndex": 0, "pageNum": 2}], "keywords": []}\n```'
        )
        client = LLMClient(api_key="test_key")

        analysis = client.analyze_pages("billing", self.PDF_CONTENT)

        assert analysis.relevant_pages == [{"fileIndex": 0, "pageNum": 2}]

    def test_invalid_json_yields_empty_analysis(self, groq_client):
        groq_client.chat.completions.create.return_value = completion("Sorry, I cannot help.")
        client = LLMClient(api_key="test_key")

        analysis = client.analyze_pages("billing", self.PDF_CONTENT)

        assert analysis.relevant_pages == []
        assert analysis.keywords == []

    def test_requires_query_and_content(self, groq_client):
        client = LLMClient(api_key="test_key")
        with pytest.raises(ValueError):
            client.analyze_pages("  ", self.PDF_CONTENT)
        with pytest.raises(ValueError):
            client.analyze_pages("MRI", [])


class TestSuggestDiagnosis:
    """Test suite for diagnosis suggestion."""

    def test_sends_image_to_vision_model(self, groq_client):
        groq_client.chat.completions.create.return_value = completion(" Lumbar radiculopathy, M54.16 ")
        client = LLMClient(api_key="test_key")

        diagnosis = client.suggest_diagnosis("abc123", None, "records.pdf", 4)

        assert diagnosis == "Lumbar radiculopathy, M54.16"
        kwargs = groq_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "meta-llama/llama-4-scout-17b-16e-instruct"
        content = kwargs["messages"][0]["content"]
        assert content[-1] == {
            "type": "image_url",
            "image_url": {"url": "data:image/jpeg;base64,abc123"},
        }

    def test_text_only(self, groq_client):
        groq_client.chat.completions.create.return_value = completion("Sciatica")
        client = LLMClient(api_key="test_key")

        client.suggest_diagnosis(None, "Pain radiating down left leg", "records.pdf", 2)

        content = groq_client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
        assert all(part["type"] == "text" for part in content)
        assert "Pain radiating down left leg" in content[1]["text"]

    def test_requires_image_or_text(self, groq_client):
        client = LLMClient(api_key="test_key")
        with pytest.raises(ValueError, match="image or text"):
            client.suggest_diagnosis(None, "   ", "records.pdf", 1)


class TestSearchAssistant:
    """Test suite for keyword suggestion."""

    def test_extract_keywords(self):
        reply = "Try searching for: MRI, lumbar spine, 2023 to narrow it down."
        assert extract_keywords(reply) == "MRI, lumbar spine, 2023 to narrow it down"

    def test_extract_keywords_without_list(self):
        assert extract_keywords("Which dates are you interested in?") is None

    def test_suggest_keywords_prepends_system_prompt(self, groq_client):
        groq_client.chat.completions.create.return_value = completion("Search for: MRI, x ray")
        client = LLMClient(api_key="test_key")

        message, keywords = client.suggest_keywords([{"role": "user", "content": "find imaging"}])

        assert message == "Search for: MRI, x ray"
        assert keywords == "MRI, x ray"
        messages = groq_client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0]["role"] == "system"
        assert messages[1] == {"role": "user", "content": "find imaging"}
