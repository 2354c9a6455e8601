"""Sliding-window admission control shared by every channel send."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable

from loguru import logger


class RateLimiter:
    """Admit at most `max_events` sends per `window_seconds`, across all channels combined."""

    def __init__(
        self,
        max_events: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_events < 1:
            raise ValueError("max_events must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._admitted: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._admitted and self._admitted[0] <= cutoff:
            self._admitted.popleft()

    def admit(self, channel: str = "") -> bool:
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._admitted) >= self.max_events:
                logger.warning(
                    "Rate limit reached ({} per {:.0f}s); skipping send to {}",
                    self.max_events,
                    self.window_seconds,
                    channel or "channel",
                )
                return False
            self._admitted.append(now)
            return True

    def in_window(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._admitted)
