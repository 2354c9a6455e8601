"""Accumulate non-critical events into digest deliveries.

A window opens on the first non-critical event after a flush. It is flushed
when it reaches `max_count` events or when `delay_seconds` have passed since
it opened, whichever comes first. Critical events never enter a window; when
one arrives the open window is flushed on its own and the critical event is
returned for an immediate separate send.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from loguru import logger

from .models import NotificationEvent, Severity

FlushCallback = Callable[[list[NotificationEvent]], None]


def build_digest(events: list[NotificationEvent]) -> NotificationEvent:
    """Fold a flushed window into the single event that is actually delivered."""
    if len(events) == 1:
        return events[0]
    lines = []
    for event in events:
        headline = event.title or event.message
        stamp = event.created_at.strftime("%H:%M:%S")
        lines.append(f"• {stamp} {headline}")
        if event.title and event.message:
            lines.append(f"  {event.message}")
    severity = Severity.PROGRESS if any(e.severity is Severity.PROGRESS for e in events) else Severity.INFO
    return NotificationEvent(
        message="\n".join(lines),
        severity=severity,
        title=f"Ralph digest: {len(events)} notifications",
        created_at=events[-1].created_at,
        metadata={"events": len(events)},
    )


@dataclass
class BatchWindow:
    deadline: float
    max_count: int
    pending_events: list[NotificationEvent] = field(default_factory=list)

    @property
    def full(self) -> bool:
        return len(self.pending_events) >= self.max_count


@dataclass(frozen=True)
class EnqueueResult:
    """What the caller must deliver now, if anything."""

    flushed: list[NotificationEvent] = field(default_factory=list)
    immediate: Optional[NotificationEvent] = None


class BatchingQueue:
    """Single-writer batching queue for one channel.

    Args:
        max_count: Events per window that trigger an immediate flush.
        delay_seconds: Window lifetime before a timer flush.
        on_timer_flush: Called from the timer thread with the expired window's events.
        clock: Monotonic clock, injectable for tests.
        use_timer: Start a `threading.Timer` per window. Tests that drive
            `flush_due()` by hand can turn this off.
    """

    def __init__(
        self,
        max_count: int,
        delay_seconds: float,
        *,
        on_timer_flush: Optional[FlushCallback] = None,
        clock: Callable[[], float] = time.monotonic,
        use_timer: bool = True,
        name: str = "batch",
    ):
        if max_count < 1:
            raise ValueError("max_count must be at least 1")
        self.max_count = max_count
        self.delay_seconds = delay_seconds
        self.name = name
        self._on_timer_flush = on_timer_flush
        self._clock = clock
        self._use_timer = use_timer and on_timer_flush is not None
        self._window: Optional[BatchWindow] = None
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._running_flushes = 0
        self._closed = False

    @property
    def pending(self) -> list[NotificationEvent]:
        with self._lock:
            return list(self._window.pending_events) if self._window else []

    def _take_window(self) -> list[NotificationEvent]:
        window, self._window = self._window, None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        return list(window.pending_events) if window else []

    def _arm_timer(self, window: BatchWindow) -> None:
        if not self._use_timer or self._closed:
            return
        timer = threading.Timer(self.delay_seconds, self._timer_fired, args=(window,))
        timer.daemon = True
        timer.name = f"ralph-{self.name}-flush"
        self._timer = timer
        timer.start()

    def _timer_fired(self, window: BatchWindow) -> None:
        with self._lock:
            # The window may already have been flushed by count or by a critical event.
            if self._closed or self._window is not window or self._on_timer_flush is None:
                return
            events = self._take_window()
            self._running_flushes += 1
        try:
            self._on_timer_flush(events)
        except Exception as exc:
            logger.error("Timed flush of {} failed: {}", self.name, exc)
        finally:
            with self._lock:
                self._running_flushes -= 1
                self._idle.notify_all()

    def enqueue(self, event: NotificationEvent) -> EnqueueResult:
        with self._lock:
            if event.is_critical:
                flushed = self._take_window()
                if flushed:
                    logger.debug("{}: critical event flushes {} pending", self.name, len(flushed))
                return EnqueueResult(flushed=flushed, immediate=event)

            if self._window is None:
                self._window = BatchWindow(deadline=self._clock() + self.delay_seconds, max_count=self.max_count)
                self._arm_timer(self._window)
            self._window.pending_events.append(event)
            if self._window.full:
                flushed = self._take_window()
                logger.debug("{}: window full, flushing {}", self.name, len(flushed))
                return EnqueueResult(flushed=flushed)
            return EnqueueResult()

    def flush_due(self) -> list[NotificationEvent]:
        """Flush the open window if its deadline has passed."""
        with self._lock:
            if self._window is None or self._clock() < self._window.deadline:
                return []
            return self._take_window()

    def flush(self) -> list[NotificationEvent]:
        """Flush whatever is pending, regardless of the deadline."""
        with self._lock:
            return self._take_window()

    def stop_timer(self) -> None:
        """Stop timed flushes and wait for any that already started.

        Pending events stay queued until `flush()` or `close()`.
        """
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._idle.wait_for(lambda: self._running_flushes == 0)

    def close(self) -> list[NotificationEvent]:
        with self._lock:
            self._closed = True
            return self._take_window()
