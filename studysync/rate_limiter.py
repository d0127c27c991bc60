from __future__ import annotations

import time

from studysync.state_store import StateStore


class RateLimiter:
    """Fixed-window request counter persisted in the state store."""

    def __init__(self, state_store: StateStore, max_requests: int, window_seconds: int) -> None:
        self.state_store = state_store
        self.max_requests = max(1, int(max_requests))
        self.window_seconds = max(1, int(window_seconds))

    def allow(self, key: str, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        window_start = int(current // self.window_seconds) * self.window_seconds
        count = self.state_store.increment_rate_counter(key, window_start)
        return count <= self.max_requests
