"""
Tier-aware admission queue for outgoing RPC calls.

Every call holds a slot for its whole duration. The queue enforces two ceilings
taken from the subscriber's tier: the number of calls in flight at once and the
number of calls started within a sliding window (one minute by default). Calls
over either ceiling wait; they are never rejected.
"""

import threading
import time
from collections import deque
from contextlib import contextmanager

import structlog

from onchain_indexer.config import SubscriptionTier, get_tier_config

logger = structlog.get_logger()


class TieredRequestQueue:
    def __init__(self, tier: SubscriptionTier = SubscriptionTier.FREE, window_seconds: float = 60.0):
        self.window_seconds = window_seconds
        self._condition = threading.Condition()
        self._in_flight = 0
        self._started = deque()
        self.total_admitted = 0
        self.total_delayed = 0
        self._apply_tier(tier)

    def _apply_tier(self, tier: SubscriptionTier) -> None:
        config = get_tier_config(tier)
        self.tier = config.tier
        self.max_concurrent = config.max_concurrent
        self.requests_per_window = config.requests_per_minute

    def set_tier(self, tier: SubscriptionTier) -> None:
        """Change the ceilings. Calls already admitted keep running."""
        with self._condition:
            previous = self.tier
            self._apply_tier(tier)
            self._condition.notify_all()
        logger.info(
            "Request queue tier updated",
            previous_tier=previous.name,
            tier=self.tier.name,
            max_concurrent=self.max_concurrent,
            requests_per_minute=self.requests_per_window,
        )

    def _prune(self, now: float) -> None:
        while self._started and now - self._started[0] >= self.window_seconds:
            self._started.popleft()

    def acquire(self) -> None:
        delayed = False
        with self._condition:
            while True:
                now = time.monotonic()
                self._prune(now)
                if self._in_flight < self.max_concurrent and len(self._started) < self.requests_per_window:
                    break
                delayed = True
                if len(self._started) >= self.requests_per_window:
                    wait = self.window_seconds - (now - self._started[0])
                else:
                    wait = None
                self._condition.wait(timeout=wait)
            self._in_flight += 1
            self._started.append(time.monotonic())
            self.total_admitted += 1
            if delayed:
                self.total_delayed += 1

    def release(self) -> None:
        with self._condition:
            self._in_flight = max(0, self._in_flight - 1)
            self._condition.notify_all()

    @contextmanager
    def slot(self):
        self.acquire()
        try:
            yield
        finally:
            self.release()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def stats(self):
        with self._condition:
            self._prune(time.monotonic())
            return {
                "tier": self.tier.name,
                "max_concurrent": self.max_concurrent,
                "requests_per_minute": self.requests_per_window,
                "in_flight": self._in_flight,
                "started_in_window": len(self._started),
                "total_admitted": self.total_admitted,
                "total_delayed": self.total_delayed,
            }
