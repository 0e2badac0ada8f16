"""
Unit tests for the provider layer.

Tests response parsing, SDK error classification and both adapters with a
mocked OpenAI client.
"""

from types import SimpleNamespace
from unittest.mock import Mock, patch

import httpx
import openai
import pytest

from batch_guard.config.loader import ProviderConfig, ProviderKind
from batch_guard.core.credentials import Credential
from batch_guard.core.errors import ErrorKind, ProviderError
from batch_guard.providers import (
    GenerateResult,
    JsonSchemaAdapter,
    MarkdownSchemaAdapter,
    build_adapter,
    classify_error,
)
from batch_guard.providers.base import parse_structured_output, strip_code_fences

REQUEST = httpx.Request("POST", "https://api.example.com/v1/chat/completions")
SCHEMA = {"type": "object", "properties": {"themes": {"type": "array"}}}


def status_error(cls, status_code, body=None):
    response = httpx.Response(status_code, request=REQUEST)
    return cls(f"Error code: {status_code}", response=response, body=body)


def completion(content, prompt_tokens=10, completion_tokens=5):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


CREDENTIAL = Credential(id="gemini-1", provider="gemini", api_key="AIzaSy-test-key-0001")


class TestParsing:
    """Test parsing helpers."""

    def test_strip_json_fence(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_strip_bare_fence(self):
        assert strip_code_fences('```\n[1, 2]\n```') == '[1, 2]'

    def test_no_fence_is_unchanged(self):
        assert strip_code_fences('  {"a": 1} ') == '{"a": 1}'

    def test_parse_valid_json(self):
        result = parse_structured_output('{"themes": ["parking"]}')
        assert result.parsed == {"themes": ["parking"]}
        assert not result.malformed

    def test_parse_fenced_json_only_when_stripping(self):
        content = '```json\n{"a": 1}\n```'
        assert parse_structured_output(content).malformed
        assert parse_structured_output(content, strip_fences=True).parsed == {"a": 1}

    def test_malformed_degrades_to_text(self):
        result = parse_structured_output("Here are the themes: parking")
        assert result.malformed
        assert result.value == {"text": "Here are the themes: parking"}

    def test_value_of_parsed_result(self):
        assert GenerateResult(parsed=[1, 2]).value == [1, 2]


class TestClassifyError:
    """Test SDK exception mapping."""

    def test_rate_limit(self):
        error = classify_error(status_error(openai.RateLimitError, 429))
        assert error.kind == ErrorKind.RATE_LIMITED

    def test_insufficient_quota(self):
        exc = status_error(openai.RateLimitError, 429, body={"code": "insufficient_quota", "message": "quota"})
        assert classify_error(exc).kind == ErrorKind.QUOTA_EXHAUSTED

    def test_payment_required(self):
        assert classify_error(status_error(openai.APIStatusError, 402)).kind == ErrorKind.QUOTA_EXHAUSTED

    @pytest.mark.parametrize("cls,status_code", [
        (openai.AuthenticationError, 401),
        (openai.PermissionDeniedError, 403),
        (openai.NotFoundError, 404),
    ])
    def test_fatal(self, cls, status_code):
        assert classify_error(status_error(cls, status_code)).kind == ErrorKind.FATAL

    @pytest.mark.parametrize("exc", [
        openai.APIConnectionError(request=REQUEST),
        openai.APITimeoutError(request=REQUEST),
        status_error(openai.InternalServerError, 503),
        status_error(openai.BadRequestError, 400),
        RuntimeError("unexpected"),
    ])
    def test_transient(self, exc):
        assert classify_error(exc).kind == ErrorKind.TRANSIENT

    def test_message_is_kept(self):
        error = classify_error(status_error(openai.RateLimitError, 429))
        assert "429" in str(error)


class TestJsonSchemaAdapter:
    """Test the native structured-output adapter."""

    @patch('batch_guard.providers.openai_adapters.OpenAI')
    def test_schema_sent_as_response_format(self, mock_openai_class):
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = completion('{"themes": ["parking"]}')
        mock_openai_class.return_value = mock_client

        adapter = JsonSchemaAdapter(ProviderConfig(schema_name="themes"))
        result = adapter.generate("Summarize", SCHEMA, credential=CREDENTIAL)

        assert result.parsed == {"themes": ["parking"]}
        assert result.usage.total_tokens == 15
        kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gemini-2.0-flash-exp"
        assert kwargs["response_format"] == {
            "type": "json_schema",
            "json_schema": {"name": "themes", "schema": SCHEMA},
        }
        assert kwargs["messages"] == [{"role": "user", "content": "Summarize"}]

    @patch('batch_guard.providers.openai_adapters.OpenAI')
    def test_plain_text_call(self, mock_openai_class):
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = completion("## Themes")
        mock_openai_class.return_value = mock_client

        result = JsonSchemaAdapter(ProviderConfig(max_tokens=512)).generate("Summarize", credential=CREDENTIAL)

        assert result.text == "## Themes"
        kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert "response_format" not in kwargs
        assert kwargs["max_tokens"] == 512

    @patch('batch_guard.providers.openai_adapters.OpenAI')
    def test_one_client_per_credential(self, mock_openai_class):
        mock_openai_class.return_value.chat.completions.create.return_value = completion("ok")
        adapter = JsonSchemaAdapter(ProviderConfig())
        other = Credential(id="gemini-2", provider="gemini", api_key="AIzaSy-test-key-0002")

        adapter.generate("a", credential=CREDENTIAL)
        adapter.generate("b", credential=CREDENTIAL)
        adapter.generate("c", credential=other)

        assert mock_openai_class.call_count == 2
        _, kwargs = mock_openai_class.call_args
        assert kwargs["api_key"] == "AIzaSy-test-key-0002"
        assert kwargs["max_retries"] == 0

    @patch('batch_guard.providers.openai_adapters.OpenAI')
    def test_sdk_error_is_classified(self, mock_openai_class):
        mock_openai_class.return_value.chat.completions.create.side_effect = status_error(openai.RateLimitError, 429)

        with pytest.raises(ProviderError) as exc_info:
            JsonSchemaAdapter(ProviderConfig()).generate("a", credential=CREDENTIAL)

        assert exc_info.value.kind == ErrorKind.RATE_LIMITED

    @patch('batch_guard.providers.openai_adapters.OpenAI')
    def test_unparseable_output_is_degraded(self, mock_openai_class):
        mock_openai_class.return_value.chat.completions.create.return_value = completion("not json")

        result = JsonSchemaAdapter(ProviderConfig()).generate("a", SCHEMA, credential=CREDENTIAL)

        assert result.malformed
        assert result.text == "not json"
        assert result.usage.total_tokens == 15

    def test_missing_model(self):
        config = SimpleNamespace(model="  ", name="gemini")
        with pytest.raises(ValueError, match="model is required"):
            JsonSchemaAdapter(config)


class TestMarkdownSchemaAdapter:
    """Test the inline-schema adapter."""

    @patch('batch_guard.providers.openai_adapters.OpenAI')
    def test_schema_inlined_and_fences_stripped(self, mock_openai_class):
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = completion('```json\n{"themes": []}\n```')
        mock_openai_class.return_value = mock_client

        adapter = MarkdownSchemaAdapter(ProviderConfig(kind=ProviderKind.MARKDOWN, model="claude-sonnet-4-5"))
        result = adapter.generate("Summarize", SCHEMA, credential=CREDENTIAL)

        assert result.parsed == {"themes": []}
        kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert "response_format" not in kwargs
        content = kwargs["messages"][0]["content"]
        assert content.startswith("Summarize")
        assert '"themes"' in content


class TestBuildAdapter:

    def test_dispatch_on_kind(self):
        assert isinstance(build_adapter(ProviderConfig()), JsonSchemaAdapter)
        assert isinstance(build_adapter(ProviderConfig(kind=ProviderKind.MARKDOWN)), MarkdownSchemaAdapter)
