# Copyright 2024-2025 Amiable Development
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Fixed-window rate limiter for Update Relay.

Every inbound call is admitted (or denied) here before any other work.

Design:
- One bucket per caller identity (typically the source address)
- Fixed window: the first request after the window elapses starts a new one
- Denials carry a retry-after hint equal to the remaining window time
- Thread-safe: bucket increments are linearized under one lock

Version: 1.0.0
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional
import logging
import threading
import time

from update_relay.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """
    Configuration for rate limiting.

    Attributes:
        max_requests: Requests allowed per identity per window
        window_seconds: Window length in seconds
    """

    max_requests: int = 60
    window_seconds: float = 60.0


@dataclass
class RateLimitResult:
    """
    Result of a rate limit check.

    Attributes:
        allowed: Whether the request is allowed
        remaining: Requests left in the current window
        reset_at: When the current window ends
        retry_after: Seconds until the window resets (0 when allowed)
    """

    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: float = 0.0


@dataclass
class RateLimitBucket:
    """
    Request counter for one identity.

    Attributes:
        count: Requests seen in the current window
        window_start: Start of the current window (epoch seconds)
    """

    count: int
    window_start: float

    def expired(self, now: float, window_seconds: float) -> bool:
        return now >= self.window_start + window_seconds


class FixedWindowRateLimiter:
    """
    Per-identity fixed-window request limiter.

    Example:
        limiter = FixedWindowRateLimiter(RateLimitConfig(max_requests=60))

        if not limiter.allow("203.0.113.7"):
            ...

        # Or raise RateLimitExceeded with a retry-after hint
        limiter.enforce("203.0.113.7")
    """

    def __init__(self, config: Optional[RateLimitConfig] = None):
        """Initialize rate limiter with configuration."""
        self.config = config or RateLimitConfig()
        if self.config.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.config.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        self._lock = threading.RLock()
        self._buckets: Dict[str, RateLimitBucket] = {}

        # Time offset for testing
        self._time_offset: float = 0.0

    def _current_time(self) -> float:
        """Get current time with test offset."""
        return time.time() + self._time_offset

    def _advance_time(self, seconds: float) -> None:
        """Advance time for testing purposes."""
        self._time_offset += seconds

    def check(self, identity: str) -> RateLimitResult:
        """
        Count a request and decide whether it is allowed.

        Args:
            identity: Opaque caller identity

        Returns:
            RateLimitResult for this request
        """
        window = self.config.window_seconds
        limit = self.config.max_requests

        with self._lock:
            now = self._current_time()
            bucket = self._buckets.get(identity)

            if bucket is None or bucket.expired(now, window):
                bucket = RateLimitBucket(count=1, window_start=now)
                self._buckets[identity] = bucket
            else:
                bucket.count += 1

            window_end = bucket.window_start + window
            reset_at = datetime.fromtimestamp(window_end, tz=timezone.utc)

            if bucket.count > limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0.0, window_end - now),
                )

            return RateLimitResult(
                allowed=True,
                remaining=limit - bucket.count,
                reset_at=reset_at,
            )

    def allow(self, identity: str) -> bool:
        """Count a request; False if it exceeds the identity's budget."""
        return self.check(identity).allowed

    def enforce(self, identity: str) -> RateLimitResult:
        """
        Count a request, raising when it exceeds the budget.

        Raises:
            RateLimitExceeded: With the remaining window time as retry hint
        """
        result = self.check(identity)
        if not result.allowed:
            logger.warning(
                "rate_limit_exceeded",
                extra={
                    "identity": identity,
                    "limit": self.config.max_requests,
                    "retry_after": round(result.retry_after, 3),
                },
            )
            raise RateLimitExceeded(
                retry_after=result.retry_after,
                limit=self.config.max_requests,
                window_seconds=self.config.window_seconds,
            )
        return result

    def purge_expired(self) -> int:
        """
        Drop buckets whose window has elapsed.

        Returns:
            Number of buckets removed
        """
        with self._lock:
            now = self._current_time()
            stale = [
                identity
                for identity, bucket in self._buckets.items()
                if bucket.expired(now, self.config.window_seconds)
            ]
            for identity in stale:
                del self._buckets[identity]
            return len(stale)

    def bucket_count(self) -> int:
        with self._lock:
            return len(self._buckets)

    def get_stats(self) -> dict:
        """Get limiter configuration and bucket table size."""
        with self._lock:
            return {
                "max_requests": self.config.max_requests,
                "window_seconds": self.config.window_seconds,
                "tracked_identities": len(self._buckets),
            }
