"""Token bucket rate limiting for outbound Bandcamp requests.

One limiter is shared by every fetch worker so the total request rate stays
below the configured budget. The bucket starts full, allowing a short burst,
and refills continuously at ``requests_per_minute / 60`` tokens per second.

Example:
    limiter = RateLimiter(requests_per_minute=60)
    limiter.acquire()  # Blocks until a token is available
    response = client.get(url)
"""

import logging
import threading
import time
from typing import Optional

# Configure module logger
logger = logging.getLogger(__name__)


class RateLimiter:
    """Thread-safe token bucket.

    Attributes:
        rate: Maximum requests per minute.
        tokens: Currently available tokens (may be fractional).
        last_update: Monotonic timestamp of the last refill.
    """

    def __init__(self, requests_per_minute: int = 60):
        if requests_per_minute <= 0:
            raise ValueError(
                f"requests_per_minute must be positive, got {requests_per_minute}"
            )

        self.rate = requests_per_minute
        self.tokens = float(requests_per_minute)
        self.last_update = time.monotonic()
        self.lock = threading.Lock()

    def _refill_tokens(self) -> None:
        # Caller must hold self.lock
        now = time.monotonic()
        elapsed = now - self.last_update
        self.tokens = min(self.rate, self.tokens + elapsed * (self.rate / 60.0))
        self.last_update = now

    def acquire(self, tokens: int = 1, timeout: Optional[float] = None) -> bool:
        """Take tokens from the bucket, blocking until they are available.

        Args:
            tokens: Number of tokens to take.
            timeout: Give up after this many seconds; None waits forever.

        Returns:
            True if the tokens were taken, False on timeout.

        Raises:
            ValueError: If more tokens are requested than the bucket holds.
        """
        if tokens <= 0:
            raise ValueError(f"tokens must be positive, got {tokens}")
        if tokens > self.rate:
            raise ValueError(
                f"Cannot acquire {tokens} tokens, bucket capacity is {self.rate}"
            )

        start = time.monotonic()
        while True:
            with self.lock:
                self._refill_tokens()
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return True
                wait = (tokens - self.tokens) / (self.rate / 60.0)

            if timeout is not None:
                remaining = timeout - (time.monotonic() - start)
                if remaining <= 0:
                    logger.debug(f"Rate limiter timed out waiting for {tokens} tokens")
                    return False
                wait = min(wait, remaining)

            time.sleep(min(wait, 1.0))

    def get_available_tokens(self) -> float:
        with self.lock:
            self._refill_tokens()
            return self.tokens

    def reset(self) -> None:
        """Refill the bucket completely."""
        with self.lock:
            self.tokens = float(self.rate)
            self.last_update = time.monotonic()
