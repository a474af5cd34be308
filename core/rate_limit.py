# core/rate_limit.py
import logging
import time
from enum import Enum
from typing import Callable, Dict

from fastapi import Request
from limits import parse
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

from core.exceptions import RateLimitExceededError
from core.request_guards import get_client_ip

logger = logging.getLogger(__name__)


class RateLimitClass(str, Enum):
    AUTH = "auth"
    AUDIT = "audit"
    DEFAULT = "default"


class RateLimiter:
    """
    Sliding-window admission control keyed by endpoint class and caller IP.

    Counters live in the `limits` storage backend: in-process memory by
    default, or Redis (``redis://...``) so that several workers share budgets.
    """

    def __init__(self, storage_uri: str, limits_by_class: Dict[str, str]):
        self.storage = storage_from_string(storage_uri)
        self.strategy = MovingWindowRateLimiter(self.storage)
        self.limits = {
            RateLimitClass(name): parse(value) for name, value in limits_by_class.items()
        }
        logger.info(f"🚦 Rate limiter ready ({storage_uri.split(':')[0]} storage)")

    def check(self, endpoint_class: RateLimitClass, client_ip: str) -> int:
        """Consume one slot; returns the remaining budget or raises 429."""
        item = self.limits[endpoint_class]
        if not self.strategy.hit(item, endpoint_class.value, client_ip):
            reset_at, remaining = self.strategy.get_window_stats(item, endpoint_class.value, client_ip)
            retry_after = max(1, int(reset_at - time.time()))
            logger.warning(f"🚫 Rate limit hit: class={endpoint_class.value} ip={client_ip}")
            raise RateLimitExceededError(remaining=remaining, retry_after=retry_after)

        _, remaining = self.strategy.get_window_stats(item, endpoint_class.value, client_ip)
        return remaining

    def reset(self) -> None:
        self.storage.reset()


def build_rate_limiter(settings) -> RateLimiter:
    return RateLimiter(
        settings.RATE_LIMIT_STORAGE_URI,
        {
            RateLimitClass.AUTH.value: settings.RATE_LIMIT_AUTH,
            RateLimitClass.AUDIT.value: settings.RATE_LIMIT_AUDIT,
            RateLimitClass.DEFAULT.value: settings.RATE_LIMIT_DEFAULT,
        },
    )


def rate_limit(endpoint_class: RateLimitClass) -> Callable[[Request], None]:
    """FastAPI dependency factory: ``Depends(rate_limit(RateLimitClass.AUDIT))``."""

    def _dependency(request: Request) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        limiter.check(endpoint_class, get_client_ip(request))

    return _dependency
