"""Retry a single channel send with exponential backoff and jitter."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from loguru import logger

from .constants import (
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
)
from .models import DispatchAttempt, DispatchOutcome, NotificationEvent

if TYPE_CHECKING:
    from .channels.base import Channel


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")


@dataclass(frozen=True)
class RetryReport:
    channel: str
    attempts: tuple[DispatchAttempt, ...]

    @property
    def final(self) -> DispatchAttempt:
        return self.attempts[-1]

    @property
    def outcome(self) -> DispatchOutcome:
        return self.final.outcome


def backoff_delay(retry_number: int, policy: RetryPolicy, rng: Optional[random.Random] = None) -> float:
    """Return the pause before retry `retry_number` (1-based).

    The exponential step is capped at `policy.max_delay`; half of it is fixed
    and half is uniformly random, so delays grow in expectation, never exceed
    the cap, and differ between concurrent callers.
    """
    rng = rng or random
    step = min(policy.max_delay, policy.base_delay * (2 ** max(0, retry_number - 1)))
    return step / 2 + rng.uniform(0, step / 2)


def send_with_retry(
    channel: "Channel",
    event: NotificationEvent,
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
    redact: Callable[[str], str] = str,
) -> RetryReport:
    """Deliver `event` through `channel`, retrying transient failures.

    Fatal failures stop at once. Channels that are not retryable get exactly
    one attempt. Never raises; unexpected exceptions count as fatal.
    `redact` is applied to failure details before they are logged.
    """
    max_attempts = policy.max_attempts if channel.retryable else 1
    attempts: list[DispatchAttempt] = []
    delay = 0.0
    for number in range(1, max_attempts + 1):
        if delay > 0:
            sleep(delay)
        try:
            result = channel.send(event)
            outcome, detail = result.outcome, result.detail
        except Exception as exc:
            outcome, detail = DispatchOutcome.FATAL_FAILURE, f"{exc.__class__.__name__}: {exc}"
        attempts.append(
            DispatchAttempt(
                channel=channel.name,
                attempt_number=number,
                delay_before_attempt=delay,
                outcome=outcome,
                detail=detail,
            )
        )
        if outcome is not DispatchOutcome.TRANSIENT_FAILURE:
            break
        if number < max_attempts:
            delay = backoff_delay(number, policy, rng)
            logger.debug(
                "{} attempt {}/{} failed ({}); retrying in {:.2f}s",
                channel.name,
                number,
                max_attempts,
                redact(detail),
                delay,
            )
    return RetryReport(channel=channel.name, attempts=tuple(attempts))
