"""
Per-caller fixed-window rate limits on top of the ``limits`` package.

The counter storage is handed to the limiter (and lives on app.state), so
tests and multi-instance deployments can swap it without touching module
globals. ``memory://`` expires its own keys; a shared deployment points
RATE_LIMIT_STORAGE_URI at redis instead.
"""
import math
import time
from dataclasses import dataclass

from limits import RateLimitItemPerSecond
from limits.storage import Storage, storage_from_string
from limits.strategies import FixedWindowRateLimiter

from config import RATE_LIMIT_STORAGE_URI


def build_storage(uri: str = RATE_LIMIT_STORAGE_URI) -> Storage:
    return storage_from_string(uri)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int  # seconds until the window resets


class RateLimiter:
    def __init__(self, storage: Storage, max_requests: int, window_seconds: int):
        self.storage = storage
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.item = RateLimitItemPerSecond(max_requests, window_seconds)
        self.strategy = FixedWindowRateLimiter(storage)

    def check(self, identifier: str) -> RateLimitResult:
        allowed = self.strategy.hit(self.item, identifier)
        stats = self.strategy.get_window_stats(self.item, identifier)
        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        return RateLimitResult(
            allowed=allowed,
            limit=self.max_requests,
            remaining=stats.remaining,
            retry_after=min(retry_after, self.window_seconds),
        )
