"""Fan one logical event out to every enabled channel without blocking the loop.

`dispatch()` hands the event to a single coordinator thread and returns a
future immediately. The coordinator validates each channel, asks the rate
limiter for a slot, routes non-critical events through the channel's batching
queue when it has one, and sends everything else concurrently (one worker per
channel) through the retry engine. Nothing raised by a channel reaches the
caller.
"""

from __future__ import annotations

import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Callable, Iterable, Optional

import httpx
from loguru import logger

from .batching import BatchingQueue, build_digest
from .channels.base import Channel
from .channels.registry import build_channels, build_http_client
from .config import RalphConfig
from .errors import ValidationError
from .models import DispatchOutcome, NotificationEvent, Severity
from .ratelimit import RateLimiter
from .retry import RetryPolicy, send_with_retry
from .validation import mask_secrets


@dataclass(frozen=True)
class ChannelReport:
    channel: str
    outcome: DispatchOutcome
    attempts: int = 0
    detail: str = ""


@dataclass(frozen=True)
class DispatchReport:
    """Aggregated per-channel outcomes for one dispatched (or digested) event."""

    event: NotificationEvent
    channels: tuple[ChannelReport, ...] = ()

    @property
    def delivered(self) -> list[str]:
        return [report.channel for report in self.channels if report.outcome is DispatchOutcome.SUCCESS]

    @property
    def failed(self) -> list[str]:
        failures = (DispatchOutcome.TRANSIENT_FAILURE, DispatchOutcome.FATAL_FAILURE)
        return [report.channel for report in self.channels if report.outcome in failures]

    @property
    def any_delivered(self) -> bool:
        return bool(self.delivered)


def _completed(report: DispatchReport) -> "Future[DispatchReport]":
    future: Future[DispatchReport] = Future()
    future.set_result(report)
    return future


class NotificationDispatcher:
    """Deliver events to all channels; safe to call from the loop thread.

    Args:
        channels: Enabled channel adapters.
        rate_limiter: Shared admission control across every channel send.
        retry_policy: Backoff settings for each channel send.
        batch_delay: Digest window lifetime in seconds; 0 disables batching.
        batch_max: Events per window that force a flush.
        secrets: Values masked in every log line this dispatcher writes.
        http_client: Closed by `close()` when given.
        sleep: Used between retries; injectable for tests.
        rng: Jitter source; injectable for tests.
        clock: Monotonic clock for the batching queues.
        use_timers: Arm real timers for batch deadlines.
    """

    def __init__(
        self,
        channels: Iterable[Channel],
        *,
        rate_limiter: RateLimiter,
        retry_policy: RetryPolicy,
        batch_delay: float,
        batch_max: int,
        secrets: Iterable[str] = (),
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
        use_timers: bool = True,
    ):
        self.channels = list(channels)
        self._rate_limiter = rate_limiter
        self._retry_policy = retry_policy
        self._http_client = http_client
        self._sleep = sleep
        self._rng = rng
        self._secrets = tuple(secrets) + tuple(s for channel in self.channels for s in channel.secrets())
        self._queues: dict[str, BatchingQueue] = {}
        if batch_delay > 0:
            for channel in self.channels:
                if channel.supports_batching:
                    self._queues[channel.name] = BatchingQueue(
                        batch_max,
                        batch_delay,
                        on_timer_flush=partial(self._on_timer_flush, channel),
                        clock=clock,
                        use_timer=use_timers,
                        name=channel.name,
                    )
        self._coordinator = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ralph-dispatch")
        self._senders = ThreadPoolExecutor(
            max_workers=max(1, len(self.channels)), thread_name_prefix="ralph-send"
        )
        self._state_lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config: RalphConfig,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        resolve_dns: bool = True,
        **kwargs,
    ) -> "NotificationDispatcher":
        client = build_http_client(config, transport)
        return cls(
            build_channels(config, client, resolve_dns=resolve_dns),
            rate_limiter=RateLimiter(config.rate_limit_max, config.rate_limit_window),
            retry_policy=RetryPolicy(config.retry_max_attempts, config.retry_base_delay, config.retry_max_delay),
            batch_delay=config.batch_delay,
            batch_max=config.batch_max,
            secrets=config.secrets(),
            http_client=client,
            **kwargs,
        )

    @property
    def channel_names(self) -> list[str]:
        return [channel.name for channel in self.channels]

    def _mask(self, text: str) -> str:
        return mask_secrets(text, self._secrets)

    def dispatch(self, event: NotificationEvent) -> "Future[DispatchReport]":
        """Queue `event` for delivery and return immediately."""
        with self._state_lock:
            if self._closed:
                logger.warning("Dispatcher closed; dropping notification {}", event.log_line())
                return _completed(DispatchReport(event))
            if not self.channels:
                return _completed(DispatchReport(event))
            return self._coordinator.submit(self._dispatch_safely, event)

    def _dispatch_safely(self, event: NotificationEvent) -> DispatchReport:
        try:
            return self._dispatch_now(event)
        except Exception as exc:
            logger.error("Notification dispatch failed: {}", self._mask(f"{exc.__class__.__name__}: {exc}"))
            return DispatchReport(event)

    def _admissible(self, channel: Channel) -> Optional[ChannelReport]:
        """Return a skip report when the channel must not be used for this event."""
        try:
            channel.validate()
        except ValidationError as exc:
            logger.warning("Skipping {}: {}", channel.name, self._mask(str(exc)))
            return ChannelReport(channel.name, DispatchOutcome.SKIPPED, detail=self._mask(str(exc)))
        except Exception as exc:
            detail = self._mask(f"{exc.__class__.__name__}: {exc}")
            logger.warning("Skipping {}: validation error {}", channel.name, detail)
            return ChannelReport(channel.name, DispatchOutcome.SKIPPED, detail=detail)
        return None

    def _dispatch_now(self, event: NotificationEvent) -> DispatchReport:
        reports: list[ChannelReport] = []
        in_flight: list[Future[list[ChannelReport]]] = []
        for channel in self.channels:
            skipped = self._admissible(channel)
            if skipped is not None:
                reports.append(skipped)
                continue
            if not self._rate_limiter.admit(channel.name):
                reports.append(ChannelReport(channel.name, DispatchOutcome.SKIPPED, detail="rate limited"))
                continue

            queue = self._queues.get(channel.name)
            if queue is None:
                in_flight.append(self._senders.submit(self._send_in_order, channel, [event]))
                continue
            result = queue.enqueue(event)
            # A channel gets one sender task, so the digest always goes out before the critical event.
            outgoing = [build_digest(result.flushed)] if result.flushed else []
            if result.immediate is not None:
                outgoing.append(result.immediate)
            if outgoing:
                in_flight.append(self._senders.submit(self._send_in_order, channel, outgoing))
            else:
                reports.append(
                    ChannelReport(channel.name, DispatchOutcome.QUEUED, detail=f"{len(queue.pending)} pending")
                )

        for future in in_flight:
            reports.extend(future.result())
        report = DispatchReport(event, tuple(reports))
        self._log_report(report)
        return report

    def _send_in_order(self, channel: Channel, events: list[NotificationEvent]) -> list[ChannelReport]:
        return [self._send(channel, event) for event in events]

    def _send(self, channel: Channel, event: NotificationEvent) -> ChannelReport:
        try:
            retry_report = send_with_retry(
                channel, event, self._retry_policy, sleep=self._sleep, rng=self._rng, redact=self._mask
            )
        except Exception as exc:
            return ChannelReport(
                channel.name, DispatchOutcome.FATAL_FAILURE, 1, self._mask(f"{exc.__class__.__name__}: {exc}")
            )
        final = retry_report.final
        return ChannelReport(channel.name, final.outcome, len(retry_report.attempts), self._mask(final.detail))

    def _log_report(self, report: DispatchReport) -> None:
        for channel_report in report.channels:
            if channel_report.outcome is DispatchOutcome.SUCCESS:
                log = logger.info
            elif channel_report.outcome in (DispatchOutcome.QUEUED, DispatchOutcome.SKIPPED):
                log = logger.debug
            else:
                log = logger.warning
            log(
                "Notify {} -> {}: {} after {} attempt(s) {}",
                report.event.log_line(),
                channel_report.channel,
                channel_report.outcome.value,
                channel_report.attempts,
                channel_report.detail,
            )

    def _deliver_digest(self, channel: Channel, events: list[NotificationEvent]) -> DispatchReport:
        digest = build_digest(events)
        report = DispatchReport(digest, (self._send(channel, digest),))
        self._log_report(report)
        return report

    def _on_timer_flush(self, channel: Channel, events: list[NotificationEvent]) -> None:
        self._coordinator.submit(self._deliver_digest, channel, events)

    def flush(self) -> list[DispatchReport]:
        """Deliver every pending batch window now, on the calling thread."""
        reports = []
        for channel in self.channels:
            queue = self._queues.get(channel.name)
            events = queue.flush() if queue else []
            if events:
                reports.append(self._deliver_digest(channel, events))
        return reports

    def send_test(self) -> DispatchReport:
        """Send one test event to every channel synchronously, bypassing batching."""
        event = NotificationEvent(
            message="This is a test notification from Ralph. If you can read this, the channel works.",
            severity=Severity.INFO,
            title=":bell: Ralph test notification",
        )
        reports: list[ChannelReport] = []
        in_flight: list[Future[ChannelReport]] = []
        for channel in self.channels:
            skipped = self._admissible(channel)
            if skipped is not None:
                reports.append(skipped)
            else:
                in_flight.append(self._senders.submit(self._send, channel, event))
        reports.extend(future.result() for future in in_flight)
        report = DispatchReport(event, tuple(reports))
        self._log_report(report)
        return report

    def close(self) -> list[DispatchReport]:
        """Drain queued dispatches, flush pending batches, and stop worker threads."""
        with self._state_lock:
            if self._closed:
                return []
            self._closed = True
        # Timed flushes must land on the coordinator before it stops taking work.
        for queue in self._queues.values():
            queue.stop_timer()
        self._coordinator.shutdown(wait=True)
        reports = []
        for channel in self.channels:
            queue = self._queues.get(channel.name)
            events = queue.close() if queue else []
            if events:
                logger.debug("Flushing {} pending {} notification(s) on shutdown", len(events), channel.name)
                reports.append(self._deliver_digest(channel, events))
        self._senders.shutdown(wait=True)
        if self._http_client is not None:
            self._http_client.close()
        return reports

    def __enter__(self) -> "NotificationDispatcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
