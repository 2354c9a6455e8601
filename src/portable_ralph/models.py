"""Define the value types exchanged between the loop, the lock manager, and the notifiers."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .constants import MESSAGE_TRUNCATE_LENGTH, PROGRESS_SUFFIX
from .utils import _coerce_int, _parse_iso, _truncate
from .validation import json_escape


class RunMode(str, Enum):
    """Select whether the worker plans tasks or implements them."""

    PLAN = "plan"
    BUILD = "build"


class ProgressStatus(str, Enum):
    """Represent the status section of a progress file."""

    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class Severity(str, Enum):
    """Classify notification events; warnings and errors are critical."""

    INFO = "info"
    PROGRESS = "progress"
    WARNING = "warning"
    ERROR = "error"

    @property
    def is_critical(self) -> bool:
        return self in (Severity.WARNING, Severity.ERROR)


class DispatchOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    FATAL_FAILURE = "fatal_failure"
    SKIPPED = "skipped"
    QUEUED = "queued"


class LoopOutcome(str, Enum):
    """Enumerate the terminal states of a loop run."""

    DONE = "done"
    PLANNED = "planned"
    LIMIT_REACHED = "limit_reached"
    CANCELLED = "cancelled"
    ERROR = "error"


_STEM_SAFE_RE = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(frozen=True)
class PlanIdentity:
    """Identify a plan by its canonical path.

    Two processes pointed at the same file through different relative paths
    or symlinks end up with the same `key`, and so contend for the same lock.
    """

    path: Path
    name: str
    key: str

    @classmethod
    def from_path(cls, plan_path: Path | str) -> "PlanIdentity":
        canonical = Path(plan_path).expanduser().resolve()
        digest = hashlib.sha256(str(canonical).encode("utf-8")).hexdigest()[:16]
        name = canonical.stem if canonical.suffix == ".md" else canonical.name
        safe = _STEM_SAFE_RE.sub("-", name).strip("-.") or "plan"
        return cls(path=canonical, name=name, key=f"{safe}-{digest}")

    @property
    def progress_filename(self) -> str:
        return f"{self.name}{PROGRESS_SUFFIX}"


@dataclass(frozen=True)
class TaskItem:
    description: str
    complete: bool = False


@dataclass(frozen=True)
class ProgressState:
    """Typed view of a progress file, extracted by `progress.parse_progress`."""

    status: ProgressStatus = ProgressStatus.PLANNING
    tasks: tuple[TaskItem, ...] = ()
    iteration_count: int = 0

    @property
    def completed_tasks(self) -> int:
        return sum(1 for task in self.tasks if task.complete)

    def summary(self) -> str:
        if not self.tasks:
            return f"status={self.status.value}"
        return f"status={self.status.value} tasks={self.completed_tasks}/{len(self.tasks)}"


def _freeze(metadata: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(metadata or {}))


@dataclass(frozen=True)
class NotificationEvent:
    """A single notification produced by the loop; immutable once created."""

    message: str
    severity: Severity = Severity.INFO
    title: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    @property
    def is_critical(self) -> bool:
        return self.severity.is_critical

    def render_text(self) -> str:
        """Render the event as the Slack-flavoured text every channel starts from."""
        lines = [f"*{self.title}*" if self.title else ""]
        if self.message:
            lines.append(self.message)
        details = [f"{key}: {value}" for key, value in self.metadata.items() if value not in (None, "")]
        if details:
            lines.append("```" + "\n".join(details) + "```")
        return "\n".join(line for line in lines if line)

    def log_line(self) -> str:
        return json_escape(_truncate(self.title or self.message, MESSAGE_TRUNCATE_LENGTH))


@dataclass(frozen=True)
class DispatchAttempt:
    """Record one try at delivering an event to one channel."""

    channel: str
    attempt_number: int
    delay_before_attempt: float
    outcome: DispatchOutcome
    detail: str = ""


@dataclass(frozen=True)
class LockRecord:
    """Ownership record persisted inside a lock file."""

    owner_pid: int
    token: str
    acquired_at: datetime
    last_heartbeat: datetime

    def encode(self) -> str:
        return json.dumps(
            {
                "owner_pid": self.owner_pid,
                "token": self.token,
                "acquired_at": self.acquired_at.isoformat(),
                "last_heartbeat": self.last_heartbeat.isoformat(),
            },
            sort_keys=True,
        )

    @classmethod
    def decode(cls, text: str) -> Optional["LockRecord"]:
        """Parse a lock file's content; return None when it is not a valid record."""
        try:
            data = json.loads(text)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        pid = _coerce_int(data.get("owner_pid"), 0)
        acquired = _parse_iso(data.get("acquired_at"))
        heartbeat = _parse_iso(data.get("last_heartbeat")) or acquired
        token = str(data.get("token") or "")
        if pid <= 0 or acquired is None or heartbeat is None or not token:
            return None
        return cls(owner_pid=pid, token=token, acquired_at=acquired, last_heartbeat=heartbeat)


@dataclass(frozen=True)
class LoopResult:
    outcome: LoopOutcome
    iterations: int
    exit_code: int
    detail: str = ""
