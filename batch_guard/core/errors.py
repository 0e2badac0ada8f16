"""
Error taxonomy for provider calls and batch jobs.

Retry decisions are made from ErrorKind alone, never from message text.
"""

from enum import Enum
from typing import Optional

from .token_counter import TokenUsage


class ErrorKind(Enum):
    """Classification of a failed provider call."""
    RATE_LIMITED = "rate_limited"        # explicit too-many-requests signal
    QUOTA_EXHAUSTED = "quota_exhausted"  # hard provider-side quota
    TRANSIENT = "transient"              # network, 5xx, unknown
    MALFORMED = "malformed"              # response received but unparseable
    FATAL = "fatal"                      # configuration or programmer error


class ProviderError(Exception):
    """Raised by provider adapters with the classification attached.

    ``usage`` carries tokens the provider reports as consumed even though
    the call failed, so they can still be charged to the rate window.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        usage: Optional[TokenUsage] = None,
        raw_text: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.usage = usage
        self.raw_text = raw_text

    def __repr__(self) -> str:
        return f"ProviderError({self.kind.value}, {str(self)!r})"


class CallFailed(Exception):
    """Raised when a logical call exhausts its retries."""

    def __init__(self, last_error: Optional[ProviderError], attempts: int):
        reason = str(last_error) if last_error is not None else "Unknown error"
        super().__init__(f"Call failed after {attempts} attempt(s): {reason}")
        self.last_error = last_error
        self.attempts = attempts


class FatalError(Exception):
    """Non-retryable failure that aborts the whole job."""


class JobCancelled(Exception):
    """Raised at a suspension point or unit boundary once cancellation is requested."""
