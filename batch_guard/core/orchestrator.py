"""
Retrying call orchestrator.

Drives one logical call through the credential pool and a provider adapter.

Failure handling by ErrorKind:
1. RATE_LIMITED    - rotate credential, fixed rate-limit delay
2. QUOTA_EXHAUSTED - rotate credential, short fixed delay
3. TRANSIENT       - exponential backoff
4. MALFORMED       - returned as a degraded success, never retried
5. FATAL           - raised immediately as FatalError
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from ..config.loader import RetryConfig
from ..providers.base import GenerateResult, ProviderAdapter
from .cancellation import CancelToken
from .credentials import Credential, CredentialPool
from .errors import CallFailed, ErrorKind, FatalError, ProviderError
from .stats import JobStats
from .token_counter import estimate_tokens

logger = logging.getLogger(__name__)


class RetryingCaller:
    """Executes provider calls with rate limiting, rotation and backoff.

    Not safe for concurrent use; give each worker its own caller. The pool
    may be shared.
    """

    def __init__(
        self,
        pool: CredentialPool,
        adapter: ProviderAdapter,
        retry: Optional[RetryConfig] = None,
        stats: Optional[JobStats] = None,
        cancel_token: Optional[CancelToken] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.pool = pool
        self.adapter = adapter
        self.retry = retry or RetryConfig()
        self.stats = stats if stats is not None else JobStats()
        self.cancel_token = cancel_token or CancelToken()
        self._sleep = sleep or self.cancel_token.sleep
        self._clock = clock
        self._last_call_ended: Optional[float] = None

    def call(
        self,
        prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        cost_estimate: Optional[int] = None,
        max_retries: Optional[int] = None,
    ) -> GenerateResult:
        """Run one logical call, retrying recoverable failures.

        Args:
            prompt: Prompt text
            schema: Optional JSON schema for structured output
            cost_estimate: Tokens to reserve; estimated from the prompt if omitted
            max_retries: Attempt limit; defaults to the retry config

        Returns:
            GenerateResult from the provider (possibly degraded to raw text)

        Raises:
            CallFailed: If every attempt failed with a recoverable error
            FatalError: On a non-retryable failure
            JobCancelled: If cancelled at a suspension point
        """
        if cost_estimate is None:
            cost_estimate = estimate_tokens(prompt)
        max_attempts = max_retries if max_retries is not None else self.retry.max_retries
        if max_attempts < 1:
            raise ValueError("max_retries must be >= 1")

        last_error: Optional[ProviderError] = None
        for attempt in range(1, max_attempts + 1):
            self.cancel_token.raise_if_cancelled()
            credential = self._acquire(cost_estimate)
            self._pace()

            try:
                result = self.adapter.generate(prompt, schema, credential=credential)
            except ProviderError as exc:
                self._last_call_ended = self._clock()
                if exc.kind == ErrorKind.MALFORMED:
                    logger.warning("Malformed response, returning raw text: %s", exc)
                    result = GenerateResult(text=exc.raw_text or "", usage=exc.usage, malformed=True)
                    self._record_success(credential, cost_estimate, result)
                    return result
                last_error = exc
                self._record_failure(credential, cost_estimate, exc)
                if exc.kind == ErrorKind.FATAL:
                    logger.error("Fatal provider error on credential %s: %s", credential.id, exc)
                    raise FatalError(str(exc)) from exc
                logger.warning(
                    "API request failed (attempt %d/%d) [%s]: %s",
                    attempt, max_attempts, exc.kind.value, str(exc)[:200]
                )
                if attempt < max_attempts:
                    self.stats.retries += 1
                self._recover(exc.kind, attempt, max_attempts)
                continue

            self._last_call_ended = self._clock()
            self._record_success(credential, cost_estimate, result)
            return result

        logger.error("API request failed after %d attempts: %s", max_attempts, last_error)
        raise CallFailed(last_error, max_attempts)

    def _acquire(self, cost_estimate: int) -> Credential:
        """Block until the pool authorizes the reservation."""
        while True:
            credential, wait = self.pool.acquire(cost_estimate)
            if wait <= 0:
                return credential
            self._sleep(wait)

    def _pace(self) -> None:
        """Keep the minimum delay between the end of one call and the next."""
        if self._last_call_ended is None:
            return
        delay = self.retry.request_delay_ms / 1000
        remaining = delay - (self._clock() - self._last_call_ended)
        if remaining > 0:
            self._sleep(remaining)

    def _recover(self, kind: ErrorKind, attempt: int, max_attempts: int) -> None:
        last_attempt = attempt >= max_attempts
        if kind == ErrorKind.RATE_LIMITED:
            self._rotate("Rate limit hit")
            delay = self.retry.rate_limit_delay_ms / 1000
        elif kind == ErrorKind.QUOTA_EXHAUSTED:
            self._rotate("Quota exceeded")
            delay = self.retry.quota_delay_ms / 1000
        else:
            delay = self.retry.backoff(attempt)

        if not last_attempt and delay > 0:
            logger.debug("Waiting %.1fs before retry", delay)
            self._sleep(delay)

    def _rotate(self, reason: str) -> None:
        if len(self.pool) > 1:
            credential = self.pool.rotate()
            self.stats.rotations += 1
            logger.warning("%s, rotating to credential %s", reason, credential.id)
        else:
            logger.warning("%s, single credential configured", reason)

    def _record_success(self, credential: Credential, reserved: int, result: GenerateResult) -> None:
        self.stats.calls_made += 1
        if result.usage is not None:
            actual = result.usage.total_tokens
            self.stats.prompt_tokens += result.usage.prompt_tokens
            self.stats.completion_tokens += result.usage.completion_tokens
        else:
            actual = reserved
        self.pool.record_usage(credential, reserved, actual)
        self.stats.add_tokens(credential.id, actual)

    def _record_failure(self, credential: Credential, reserved: int, exc: ProviderError) -> None:
        self.stats.failed_calls += 1
        if exc.usage is not None:
            self.pool.record_usage(credential, reserved, exc.usage.total_tokens)
            self.stats.prompt_tokens += exc.usage.prompt_tokens
            self.stats.completion_tokens += exc.usage.completion_tokens
            self.stats.add_tokens(credential.id, exc.usage.total_tokens)
