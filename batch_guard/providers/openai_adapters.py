"""
OpenAI-SDK provider adapters.

Both adapters talk to an OpenAI-compatible chat completions endpoint (the
OpenAI API itself, Gemini's compatibility endpoint, or a gateway in front of
Claude). They differ only in how a response schema reaches the model:

- JsonSchemaAdapter passes it natively as ``response_format``.
- MarkdownSchemaAdapter inlines it as instructions and strips code fences
  from the reply before parsing.
"""

import dataclasses
import json
import logging
from typing import Any, Dict, Optional

import openai
from openai import OpenAI

from ..config.loader import ProviderConfig, ProviderKind
from ..core.credentials import Credential, mask_secret
from ..core.errors import ErrorKind, ProviderError
from ..core.token_counter import TokenUsage
from .base import GenerateResult, ProviderAdapter, parse_structured_output

logger = logging.getLogger(__name__)

# Error codes providers use for a hard quota rather than a per-minute throttle
QUOTA_ERROR_CODES = frozenset({"insufficient_quota", "quota_exceeded", "billing_hard_limit_reached"})


def classify_error(exc: Exception) -> ProviderError:
    """Map an ``openai`` SDK exception onto the ErrorKind taxonomy.

    Args:
        exc: Exception raised by the SDK

    Returns:
        ProviderError carrying the classification and the original message
    """
    message = str(exc)

    if isinstance(exc, openai.RateLimitError):
        code = getattr(exc, "code", None)
        if code in QUOTA_ERROR_CODES:
            return ProviderError(ErrorKind.QUOTA_EXHAUSTED, message)
        return ProviderError(ErrorKind.RATE_LIMITED, message)

    # APITimeoutError is a subclass of APIConnectionError
    if isinstance(exc, openai.APIConnectionError):
        return ProviderError(ErrorKind.TRANSIENT, message)

    if isinstance(exc, (
        openai.AuthenticationError,
        openai.PermissionDeniedError,
        openai.NotFoundError,
    )):
        return ProviderError(ErrorKind.FATAL, message)

    if isinstance(exc, openai.APIStatusError):
        if exc.status_code == 402:
            return ProviderError(ErrorKind.QUOTA_EXHAUSTED, message)
        return ProviderError(ErrorKind.TRANSIENT, message)

    return ProviderError(ErrorKind.TRANSIENT, message)


class _OpenAICompatibleAdapter(ProviderAdapter):
    """Shared client management and request plumbing."""

    strip_fences = False

    def __init__(self, config: ProviderConfig):
        """Initialize adapter.

        Args:
            config: Provider settings (model, endpoint, sampling)

        Raises:
            ValueError: If model is missing/empty
        """
        if not config.model or not config.model.strip():
            raise ValueError("model is required and cannot be empty")

        self.config = config
        self.name = config.name
        self._clients: Dict[str, OpenAI] = {}

    def client_for(self, credential: Credential) -> OpenAI:
        """Return the SDK client bound to ``credential``, creating it once."""
        client = self._clients.get(credential.id)
        if client is None:
            logger.debug(
                "Creating %s client for credential %s (%s)",
                self.name, credential.id, mask_secret(credential.api_key)
            )
            client = OpenAI(
                api_key=credential.api_key,
                base_url=self.config.base_url,
                timeout=self.config.request_timeout,
                max_retries=0,  # retries belong to the orchestrator
            )
            self._clients[credential.id] = client
        return client

    def build_messages(self, prompt: str, schema: Optional[Dict[str, Any]]) -> list:
        return [{"role": "user", "content": prompt}]

    def request_options(self, schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {}

    def generate(
        self,
        prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        *,
        credential: Credential,
    ) -> GenerateResult:
        """Create a chat completion and parse it.

        Raises:
            ProviderError: Classified SDK failure
        """
        kwargs: Dict[str, Any] = {
            "model": self.config.model,
            "messages": self.build_messages(prompt, schema),
            "temperature": self.config.temperature,
        }
        if self.config.max_tokens is not None:
            kwargs["max_tokens"] = self.config.max_tokens
        kwargs.update(self.request_options(schema))

        try:
            response = self.client_for(credential).chat.completions.create(**kwargs)
        except openai.OpenAIError as exc:
            raise classify_error(exc) from exc

        usage = _extract_usage(response)
        content = _extract_content(response)
        if usage is not None:
            logger.debug(
                "Token usage: %d (prompt: %d, response: %d)",
                usage.total_tokens, usage.prompt_tokens, usage.completion_tokens
            )

        if schema is None:
            return GenerateResult(text=content, usage=usage)

        result = parse_structured_output(content, strip_fences=self.strip_fences)
        if result.malformed:
            logger.warning("Failed to parse JSON response, returning raw text")
        return dataclasses.replace(result, usage=usage)


class JsonSchemaAdapter(_OpenAICompatibleAdapter):
    """Adapter that hands the schema to the provider as a structured-output format."""

    def request_options(self, schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if schema is None:
            return {}
        return {
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": self.config.schema_name,
                    "schema": schema,
                },
            }
        }


class MarkdownSchemaAdapter(_OpenAICompatibleAdapter):
    """Adapter for text-only models: the schema travels inside the prompt."""

    strip_fences = True

    def build_messages(self, prompt: str, schema: Optional[Dict[str, Any]]) -> list:
        if schema is None:
            return [{"role": "user", "content": prompt}]
        return [{"role": "user", "content": prompt + "\n\n" + schema_instruction(schema)}]


def schema_instruction(schema: Dict[str, Any]) -> str:
    """Render a JSON schema as an output-format instruction block."""
    return (
        "Respond ONLY with a JSON object that matches this JSON schema. "
        "Do not add any commentary before or after the JSON.\n"
        "```json\n"
        f"{json.dumps(schema, indent=2)}\n"
        "```"
    )


def build_adapter(config: ProviderConfig) -> ProviderAdapter:
    """Select the adapter implementation for ``config.kind``."""
    if config.kind == ProviderKind.JSON_SCHEMA:
        return JsonSchemaAdapter(config)
    if config.kind == ProviderKind.MARKDOWN:
        return MarkdownSchemaAdapter(config)
    raise ValueError(f"Unsupported provider kind: {config.kind}")


def _extract_usage(response: Any) -> Optional[TokenUsage]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return None
    return TokenUsage(
        prompt_tokens=usage.prompt_tokens or 0,
        completion_tokens=usage.completion_tokens or 0,
    )


def _extract_content(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    return choices[0].message.content or ""
