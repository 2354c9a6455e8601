"""Provide the public `portable_ralph` package exports."""

from __future__ import annotations

from .config import RalphConfig, load_config
from .constants import VERSION
from .dispatcher import DispatchReport, NotificationDispatcher
from .loop import TaskLoopController
from .models import LoopOutcome, LoopResult, NotificationEvent, RunMode, Severity

__version__ = VERSION

__all__ = [
    "DispatchReport",
    "LoopOutcome",
    "LoopResult",
    "NotificationDispatcher",
    "NotificationEvent",
    "RalphConfig",
    "RunMode",
    "Severity",
    "TaskLoopController",
    "load_config",
]
