"""
Rate Limiter with Token Bucket Algorithm

Pre-emptive per-account throttling so a busy account never trips the
exchange's request limits (retCode 10006) and never starves another account.

Each account gets its own bucket; buckets are created lazily on first use.
"""
import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict

logger = logging.getLogger(__name__)


@dataclass
class TokenBucket:
    """
    Token bucket for rate limiting.

    Tokens replenish at a fixed rate. Each request consumes one token.
    If bucket is empty, request must wait until tokens replenish.
    """
    capacity: float  # Max tokens (burst capacity)
    refill_rate: float  # Tokens per second
    tokens: float = field(init=False)
    last_refill: float = field(init=False)

    def __post_init__(self):
        self.tokens = self.capacity  # Start full
        self.last_refill = time.monotonic()

    def refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: float = 1.0) -> bool:
        """
        Try to consume tokens.

        Returns:
            True if tokens available, False if bucket empty
        """
        self.refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: float = 1.0) -> float:
        """Seconds until ``tokens`` are available (0 if available now)"""
        self.refill()
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / self.refill_rate


@dataclass
class RateLimitStats:
    total_requests: int = 0
    throttled_requests: int = 0
    total_wait_ms: float = 0.0
    max_wait_ms: float = 0.0

    def record(self, waited_seconds: float) -> None:
        self.total_requests += 1
        if waited_seconds > 0:
            self.throttled_requests += 1
            wait_ms = waited_seconds * 1000.0
            self.total_wait_ms += wait_ms
            self.max_wait_ms = max(self.max_wait_ms, wait_ms)

    def throttled_pct(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return (self.throttled_requests / self.total_requests) * 100.0


class RateLimiter:
    """
    Per-account token buckets.

    Usage:
        limiter = RateLimiter(requests_per_second=5)
        limiter.acquire("acc-1")
        # ... signed call for acc-1 ...
    """

    def __init__(self, requests_per_second: float = 5.0, burst: float = 10.0):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.requests_per_second = float(requests_per_second)
        self.burst = max(float(burst), 1.0)
        self._buckets: Dict[str, TokenBucket] = {}
        self._stats: Dict[str, RateLimitStats] = {}
        self._lock = Lock()

    def _bucket(self, key: str) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(capacity=self.burst, refill_rate=self.requests_per_second)
            self._buckets[key] = bucket
            self._stats[key] = RateLimitStats()
        return bucket

    def acquire(self, key: str, tokens: float = 1.0, block: bool = True) -> bool:
        """
        Take ``tokens`` from the account's bucket.

        Args:
            key: Account id
            tokens: Request weight
            block: Sleep until tokens are available; otherwise return False

        Returns:
            True once tokens were consumed
        """
        tokens = min(tokens, self.burst)
        waited = 0.0
        while True:
            with self._lock:
                bucket = self._bucket(key)
                if bucket.consume(tokens):
                    self._stats[key].record(waited)
                    return True
                wait_for = bucket.wait_time(tokens)
            if not block:
                return False
            if waited == 0.0:
                logger.debug(f"Throttling {key} for {wait_for:.3f}s")
            # Sleep outside the lock so other accounts keep flowing
            time.sleep(wait_for)
            waited += wait_for

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                key: {
                    "total_requests": stats.total_requests,
                    "throttled_requests": stats.throttled_requests,
                    "throttled_pct": round(stats.throttled_pct(), 2),
                    "max_wait_ms": round(stats.max_wait_ms, 1),
                }
                for key, stats in self._stats.items()
            }
