"""
Channel Rate Limiter
====================

Per-integration rate-limit gate driven by what the platform reports.

Platforms announce their quota in response headers
(X-RateLimit-Remaining / X-RateLimit-Reset and friends). The limiter keeps
the last reported state and refuses outbound calls while the quota is
exhausted and the reset time lies in the future.

State is advisory and per process: several workers talking to the same
platform account do not share it.
"""

from datetime import datetime, timezone
from typing import Dict, Optional

import structlog
from prometheus_client import Counter

from .http_client import RATE_LIMIT_RESET_HEADERS, parse_reset_time
from .platform_adapters.base_adapter import RateLimitState

logger = structlog.get_logger(__name__)

# =============================================================================
# PROMETHEUS METRICS
# =============================================================================

RATE_LIMIT_REQUESTS = Counter(
    "channel_rate_limit_requests_total",
    "Total rate limit check requests",
    ["channel_type", "result"]  # result: allowed, denied
)

RATE_LIMIT_REMAINING_HEADERS = ("x-ratelimit-remaining", "ratelimit-remaining")


class ChannelRateLimiter:
    """
    Rate-limit gate for one integration.

    Usage:
        limiter = ChannelRateLimiter("airbnb", status.rate_limit)
        if not limiter.acquire():
            return False
        ...
        limiter.update_from_headers(response.headers)
    """

    def __init__(self, channel_type: str, state: Optional[RateLimitState] = None):
        self.channel_type = channel_type
        self.state = state if state is not None else RateLimitState()

    def is_exhausted(self, now: Optional[datetime] = None) -> bool:
        """True while no quota is left and the reset time lies ahead."""
        now = now or datetime.now(timezone.utc)
        return (
            self.state.remaining <= 0
            and self.state.reset_time is not None
            and self.state.reset_time > now
        )

    def acquire(self, now: Optional[datetime] = None) -> bool:
        """
        Check whether an outbound call may be made.

        Returns:
            True if request is allowed, False if the quota is exhausted
        """
        now = now or datetime.now(timezone.utc)
        if self.is_exhausted(now):
            RATE_LIMIT_REQUESTS.labels(
                channel_type=self.channel_type,
                result="denied"
            ).inc()
            logger.warning(
                "Rate limit exceeded",
                channel_type=self.channel_type,
                retry_after=self.get_retry_after(now)
            )
            return False

        RATE_LIMIT_REQUESTS.labels(
            channel_type=self.channel_type,
            result="allowed"
        ).inc()
        return True

    def get_retry_after(self, now: Optional[datetime] = None) -> float:
        """Seconds until the quota resets (0 when not limited)."""
        if self.state.reset_time is None:
            return 0.0
        now = now or datetime.now(timezone.utc)
        return max(0.0, (self.state.reset_time - now).total_seconds())

    def update_from_headers(self, headers: Dict[str, str], now: Optional[datetime] = None) -> None:
        """Refresh the state from the rate-limit headers of a completed exchange."""
        lowered = {k.lower(): v for k, v in (headers or {}).items()}

        remaining = None
        for name in RATE_LIMIT_REMAINING_HEADERS:
            if name in lowered:
                try:
                    remaining = max(0, int(float(lowered[name])))
                except ValueError:
                    logger.warning("Unparseable rate limit header", header=name, value=lowered[name])
                break

        if remaining is None:
            return

        reset_time = self.state.reset_time
        if any(name in lowered for name in RATE_LIMIT_RESET_HEADERS):
            reset_time = parse_reset_time(lowered, now=now)

        self.state.remaining = remaining
        self.state.reset_time = reset_time

    def mark_exhausted(self, reset_time: datetime) -> None:
        """Record a 429: no quota left until reset_time."""
        self.state.remaining = 0
        self.state.reset_time = reset_time
        logger.warning(
            "Rate limit reached",
            channel_type=self.channel_type,
            reset_time=reset_time.isoformat()
        )

    def reset(self) -> None:
        """Forget the reported quota (for testing/admin)."""
        self.state.remaining = RateLimitState().remaining
        self.state.reset_time = None
