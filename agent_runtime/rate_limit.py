from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Tuple


@dataclass(frozen=True)
class RateRule:
    key: str
    limit: int
    window_seconds: float


class SlidingWindowRateLimiter:
    """
    Per (rule, client) sliding-window limiter.

    `allow` reserves a slot when one is free; the slot stays taken for
    `window_seconds` whether or not the caller goes on to use it.
    """

    def __init__(self, rules: Dict[str, RateRule], clock: Callable[[], float] = time.monotonic):
        self._rules = rules
        self._clock = clock
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}
        self._lock = asyncio.Lock()

    def add_rule(self, rule: RateRule) -> None:
        self._rules[rule.key] = rule

    def has_rule(self, rule_key: str) -> bool:
        return rule_key in self._rules

    async def allow(self, rule_key: str, client_id: str) -> bool:
        rule = self._rules[rule_key]
        now = self._clock()
        key = (rule_key, client_id)
        async with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= rule.window_seconds:
                hits.popleft()
            if len(hits) >= rule.limit:
                return False
            hits.append(now)
            return True

    async def retry_after(self, rule_key: str, client_id: str) -> float:
        """Seconds until the oldest hit leaves the window (0 when a slot is free)."""
        rule = self._rules[rule_key]
        now = self._clock()
        async with self._lock:
            hits = self._hits.get((rule_key, client_id))
            if not hits or len(hits) < rule.limit:
                return 0.0
            return max(0.0, rule.window_seconds - (now - hits[0]))
