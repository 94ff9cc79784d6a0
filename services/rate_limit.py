import math
import time
from dataclasses import dataclass
from typing import Dict, Tuple

from constants import RATE_LIMITS
from logging_config import get_logger
from services.errors import RateLimited

logger = get_logger(__name__)


@dataclass
class _Window:
    count: int
    reset_at: float
    blocked_until: float = 0.0


class RateLimiter:
    """Fixed-window limiter per connection and action, with a block period once exceeded."""

    def __init__(self, limits: Dict[str, Tuple[int, float, float]] = None, clock=time.monotonic):
        self.limits = dict(RATE_LIMITS if limits is None else limits)
        self.clock = clock
        self._windows: Dict[Tuple[str, str], _Window] = {}

    def check(self, connection_id: str, action: str) -> None:
        config = self.limits.get(action)
        if config is None:
            return
        max_requests, window_s, block_s = config
        now = self.clock()
        window = self._windows.setdefault((connection_id, action), _Window(count=0, reset_at=now + window_s))

        if window.blocked_until > now:
            retry_after = math.ceil(window.blocked_until - now)
            raise RateLimited(
                f"Too many {action} requests. Please try again in {retry_after} seconds.",
                retry_after=retry_after,
            )

        if now > window.reset_at:
            window.count = 0
            window.reset_at = now + window_s
            window.blocked_until = 0.0

        if window.count >= max_requests:
            window.blocked_until = now + block_s
            retry_after = math.ceil(block_s)
            logger.warning(f"Rate limit exceeded for {connection_id} on {action}")
            raise RateLimited(
                f"Rate limit exceeded. Please wait {retry_after} seconds before trying again.",
                retry_after=retry_after,
            )

        window.count += 1

    def forget(self, connection_id: str) -> None:
        for key in [k for k in self._windows if k[0] == connection_id]:
            del self._windows[key]
