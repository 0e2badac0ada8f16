"""
Token counting and usage tracking.

Holds provider-reported token counts and the pre-call estimate used for
rate-limit reservations.
"""

import math
from dataclasses import dataclass

# Rough characters-per-token ratio used when no provider count is available
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by a provider for one call."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    """Estimate the token cost of a prompt before sending it.

    This is a heuristic only. Provider-reported usage replaces it once the
    call completes.

    Args:
        text: Prompt text

    Returns:
        Estimated token count, at least 1
    """
    if not text:
        return 1
    return max(1, math.ceil(len(text) / CHARS_PER_TOKEN))
