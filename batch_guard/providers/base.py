"""
Provider adapter interface and response parsing helpers.

Parsing helpers do no I/O so they can be tested directly.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..core.credentials import Credential
from ..core.token_counter import TokenUsage

_FENCE_RE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


@dataclass(frozen=True)
class GenerateResult:
    """Outcome of one successful provider call.

    Exactly one of ``parsed`` and ``text`` is meaningful: ``parsed`` for a
    schema-backed call whose output parsed, ``text`` otherwise. ``malformed``
    marks a schema-backed call that degraded to raw text.
    """
    parsed: Any = None
    text: Optional[str] = None
    usage: Optional[TokenUsage] = None
    malformed: bool = False

    @property
    def value(self) -> Any:
        """The parsed value, or ``{"text": raw}`` when there is none."""
        if self.text is not None:
            return {"text": self.text}
        return self.parsed


def strip_code_fences(content: str) -> str:
    """Remove a surrounding Markdown code fence (```json ... ```), if present."""
    match = _FENCE_RE.match(content)
    if match:
        return match.group(1).strip()
    return content.strip()


def parse_structured_output(content: str, strip_fences: bool = False) -> GenerateResult:
    """Parse model output as JSON, degrading to raw text when it does not parse.

    Args:
        content: Raw text from the provider
        strip_fences: Strip Markdown code fences before parsing

    Returns:
        GenerateResult with ``parsed`` set, or ``text`` set and ``malformed=True``
    """
    candidate = strip_code_fences(content) if strip_fences else content
    try:
        return GenerateResult(parsed=json.loads(candidate))
    except (json.JSONDecodeError, TypeError):
        return GenerateResult(text=content, malformed=True)


class ProviderAdapter(ABC):
    """Capability wrapping one text-generation provider.

    Implementations raise ``ProviderError`` with a classified ``ErrorKind``
    on failure. Unparseable output is not a failure: it is returned as a
    degraded ``GenerateResult``.
    """

    name: str = "provider"

    @abstractmethod
    def generate(
        self,
        prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        *,
        credential: Credential,
    ) -> GenerateResult:
        """Send ``prompt`` using ``credential`` and return the result."""
