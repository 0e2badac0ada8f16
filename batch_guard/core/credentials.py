"""
Credential pool and per-window token rate limiting.

Enforcement rules:
1. A credential never has more than ``tokens_per_window * safety_fraction``
   tokens reserved inside one window.
2. A window's count resets only once ``window_length`` has elapsed since
   the window started.
3. Rotation is explicit (throttling or quota signals), never automatic on
   local window exhaustion.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from .errors import FatalError

logger = logging.getLogger(__name__)


def mask_secret(secret: Optional[str]) -> str:
    """Return a log-safe form of an API key."""
    if not secret:
        return "<none>"
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}...{secret[-4:]}"


@dataclass
class Credential:
    """One API credential and its consumption in the current window.

    Mutated only by the owning CredentialPool.
    """
    id: str
    provider: str
    api_key: str = field(default="", repr=False)
    window_token_count: int = 0
    window_started_at: float = 0.0


class CredentialPool:
    """Ordered credentials with a round-robin cursor and a token budget per window.

    All mutation happens under one lock so several drivers may share a pool.
    """

    def __init__(
        self,
        credentials: Sequence[Credential],
        tokens_per_window: int,
        window_length: float = 60.0,
        safety_fraction: float = 0.85,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the pool.

        Args:
            credentials: Credentials in rotation order
            tokens_per_window: Provider-stated token limit per window
            window_length: Window length in seconds
            safety_fraction: Share of the stated limit that may be used (0 < f <= 1)
            clock: Monotonic time source in seconds

        Raises:
            FatalError: If no credentials are configured
            ValueError: If limits are invalid
        """
        if not credentials:
            raise FatalError("No API credentials configured")
        if tokens_per_window <= 0:
            raise ValueError("tokens_per_window must be > 0")
        if window_length <= 0:
            raise ValueError("window_length must be > 0")
        if not 0 < safety_fraction <= 1:
            raise ValueError("safety_fraction must be in (0, 1]")

        self._credentials: List[Credential] = list(credentials)
        self.tokens_per_window = tokens_per_window
        self.window_length = window_length
        self.safety_fraction = safety_fraction
        self._clock = clock
        self._index = 0
        self._lock = threading.Lock()

        now = clock()
        for credential in self._credentials:
            credential.window_started_at = now

        logger.info("Initialized %d API credential(s)", len(self._credentials))

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def budget(self) -> float:
        """Tokens that may be reserved per credential per window."""
        return self.tokens_per_window * self.safety_fraction

    @property
    def current(self) -> Credential:
        with self._lock:
            return self._credentials[self._index]

    @property
    def credentials(self) -> Tuple[Credential, ...]:
        return tuple(self._credentials)

    def acquire(self, estimated_cost: int) -> Tuple[Credential, float]:
        """Try to reserve ``estimated_cost`` tokens on the current credential.

        Returns:
            Tuple of (credential, wait_seconds). A zero wait means the cost was
            reserved; a positive wait means nothing was reserved and the caller
            should sleep and try again.

        Raises:
            FatalError: If the estimate can never fit inside one window
        """
        if estimated_cost > self.budget:
            raise FatalError(
                f"Estimated cost {estimated_cost} exceeds the per-window budget "
                f"of {self.budget:.0f} tokens"
            )
        with self._lock:
            credential = self._credentials[self._index]
            self._check_window(credential)
            wait = self._reserve(credential, estimated_cost)
        if wait > 0:
            logger.warning(
                "Approaching rate limit on credential %s. Waiting %.1fs",
                credential.id, wait
            )
        return credential, wait

    def check_window(self, credential: Credential) -> None:
        """Reset the credential's window if it has expired."""
        with self._lock:
            self._check_window(credential)

    def reserve(self, credential: Credential, cost: int) -> float:
        """Reserve ``cost`` tokens or return the seconds until the window resets."""
        with self._lock:
            self._check_window(credential)
            return self._reserve(credential, cost)

    def rotate(self) -> Credential:
        """Advance the cursor round-robin and return the new current credential."""
        with self._lock:
            self._index = (self._index + 1) % len(self._credentials)
            credential = self._credentials[self._index]
        logger.debug(
            "Rotated to API credential %d/%d (%s)",
            self._index + 1, len(self._credentials), credential.id
        )
        return credential

    def record_usage(self, credential: Credential, reserved: int, actual: int) -> None:
        """Charge tokens consumed beyond the reservation to the window.

        Accounting is monotonic: when the provider reports fewer tokens than
        were reserved, the reservation is kept.
        """
        extra = actual - reserved
        if extra <= 0:
            return
        with self._lock:
            self._check_window(credential)
            credential.window_token_count += extra

    def _check_window(self, credential: Credential) -> None:
        now = self._clock()
        if now - credential.window_started_at >= self.window_length:
            credential.window_token_count = 0
            credential.window_started_at = now

    def _reserve(self, credential: Credential, cost: int) -> float:
        if credential.window_token_count + cost > self.budget:
            resets_at = credential.window_started_at + self.window_length
            return resets_at - self._clock()
        credential.window_token_count += cost
        return 0.0
