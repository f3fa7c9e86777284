"""Token bucket rate limiting for provider API requests.

Each mailbox gets its own bucket so that many short-lived provider clients
(one per job invocation) still share a single request budget per account.
Buckets live in a BucketRegistry owned by whoever builds the providers,
rather than in module-level state.

Standard rate limits:
- Microsoft Graph: 10 requests per second per mailbox, burst of 10
"""

import asyncio
import threading
import time

from mailflow.core.errors import RateLimitExceeded
from mailflow.core.logging import get_logger

logger = get_logger(__name__)

# Waits longer than this are surfaced as RateLimitExceeded so the queue can
# reschedule the job instead of holding a worker slot.
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate and each request consumes one. If no
    tokens are available the caller waits until one is.

    Example:
        limiter = TokenBucket(rate=1.0, capacity=1)

        async def make_api_call():
            await limiter.consume()
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: int | None = None,
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens in the bucket (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity if initial_tokens is None else initial_tokens)
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()
        self.sync_lock = threading.Lock()

    def _check_request(self, tokens: int) -> None:
        if tokens > self.capacity:
            logger.error(
                "rate_limit_request_exceeds_capacity",
                tokens=tokens,
                capacity=self.capacity,
            )
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

    def _reserve(self, tokens: int) -> float:
        """Take tokens if available, else return the wait needed. Caller holds a lock."""
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return 0.0

        wait_time = (tokens - self.tokens) / self.rate
        if wait_time > MAX_WAIT_SECONDS:
            logger.warning("rate_limit_wait_excessive", wait_time=wait_time)
            raise RateLimitExceeded(
                f"Rate limit exceeded, would require {wait_time:.2f}s wait",
                retry_after=wait_time,
            )
        return wait_time

    def _take_after_wait(self, tokens: int) -> bool:
        self._refill()
        if self.tokens < tokens:
            logger.error(
                "rate_limit_tokens_unavailable_after_wait",
                tokens=self.tokens,
                required=tokens,
            )
            raise RateLimitExceeded("Failed to get enough tokens even after waiting")
        self.tokens -= tokens
        return True

    async def consume(self, tokens: int = 1) -> bool:
        """Consume tokens from the bucket, waiting if needed.

        Raises:
            RateLimitExceeded: If tokens cannot be consumed even after waiting
        """
        self._check_request(tokens)

        async with self.lock:
            wait_time = self._reserve(tokens)
            if wait_time == 0.0:
                return True

        logger.debug("rate_limit_waiting", wait_time=wait_time)
        await asyncio.sleep(wait_time)

        async with self.lock:
            return self._take_after_wait(tokens)

    def consume_sync(self, tokens: int = 1) -> bool:
        """Thread-safe blocking version of consume() for clients run in worker threads.

        Raises:
            RateLimitExceeded: If tokens cannot be consumed even after waiting
        """
        self._check_request(tokens)

        with self.sync_lock:
            wait_time = self._reserve(tokens)
            if wait_time == 0.0:
                return True

        logger.debug("rate_limit_waiting_sync", wait_time=wait_time)
        time.sleep(wait_time)

        with self.sync_lock:
            return self._take_after_wait(tokens)

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


class BucketRegistry:
    """Named token buckets shared by every client built from one factory."""

    def __init__(self, rate: float = 10.0, capacity: int = 10):
        self.rate = rate
        self.capacity = capacity
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> TokenBucket:
        """Get or create the bucket for a name (e.g. "graph:<account id>")."""
        with self._lock:
            bucket = self._buckets.get(name)
            if bucket is None:
                bucket = TokenBucket(rate=self.rate, capacity=self.capacity)
                self._buckets[name] = bucket
            return bucket
