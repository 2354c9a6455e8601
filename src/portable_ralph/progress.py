"""Parse the line-oriented progress file the worker maintains between iterations."""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path

from .constants import COMPLETION_MARKER, NO_COMMIT_DIRECTIVE
from .io_utils import _atomic_write_text, _read_text
from .models import ProgressState, ProgressStatus, RunMode, TaskItem

_TASK_RE = re.compile(r"^\s*[-*+]\s+\[(?P<mark>[ xX])\]\s+(?P<text>.+?)\s*$")
_ITERATION_RE = re.compile(r"^\s*Iterations?:\s*(?P<count>\d+)\s*$", re.IGNORECASE)
_HEADING_RE = re.compile(r"^\s*#{1,6}\s+(?P<title>.+?)\s*$")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")

_STATUS_WORDS = {
    "PLANNING": ProgressStatus.PLANNING,
    "IN_PROGRESS": ProgressStatus.IN_PROGRESS,
    "IN PROGRESS": ProgressStatus.IN_PROGRESS,
    "DONE": ProgressStatus.DONE,
    COMPLETION_MARKER: ProgressStatus.DONE,
}


def _has_whole_line(lines: list[str], marker: str) -> bool:
    return any(line.strip() == marker for line in lines)


def parse_progress(text: str, *, marker: str = COMPLETION_MARKER) -> ProgressState:
    """Extract a `ProgressState` from progress file contents.

    The completion marker only counts when it is the entire content of a line,
    so prose such as "do not write RALPH_DONE" never ends the loop.
    """
    lines = (text or "").splitlines()
    status = ProgressStatus.PLANNING
    tasks: list[TaskItem] = []
    iteration_count = 0
    section = ""

    for line in lines:
        heading = _HEADING_RE.match(line)
        if heading:
            section = heading.group("title").strip().lower()
            continue

        task = _TASK_RE.match(line)
        if task:
            tasks.append(TaskItem(description=task.group("text"), complete=task.group("mark") in "xX"))
            continue

        iteration = _ITERATION_RE.match(line)
        if iteration:
            iteration_count = int(iteration.group("count"))
            continue

        if section == "status":
            word = line.strip().upper()
            if word in _STATUS_WORDS and status is not ProgressStatus.DONE:
                status = _STATUS_WORDS[word]

    if _has_whole_line(lines, marker):
        status = ProgressStatus.DONE
    elif status is ProgressStatus.DONE:
        # A bare DONE in the status section is not the completion marker.
        status = ProgressStatus.IN_PROGRESS

    return ProgressState(status=status, tasks=tuple(tasks), iteration_count=iteration_count)


def is_complete(state: ProgressState) -> bool:
    return state.status is ProgressStatus.DONE


def read_progress(path: Path) -> ProgressState:
    return parse_progress(_read_text(path))


def render_progress_skeleton(plan_name: str, mode: RunMode, *, started: datetime | None = None) -> str:
    started = started or datetime.now().astimezone()
    status = "PLANNING" if mode is RunMode.PLAN else "IN_PROGRESS"
    return (
        f"# Progress: {plan_name}\n"
        "\n"
        f"Started: {started.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}\n"
        "\n"
        "## Status\n"
        "\n"
        f"{status}\n"
        "\n"
        "## Tasks Completed\n"
        "\n"
    )


def ensure_progress_file(path: Path, plan_name: str, mode: RunMode) -> bool:
    """Create the progress file when missing. Returns True if it was created."""
    if path.exists():
        return False
    _atomic_write_text(path, render_progress_skeleton(plan_name, mode))
    return True


def plan_disables_commits(plan_text: str) -> bool:
    """Return True when the plan has a bare `DO_NOT_COMMIT` line outside fenced code blocks."""
    in_fence = False
    for line in (plan_text or "").splitlines():
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if not in_fence and line.strip() == NO_COMMIT_DIRECTIVE:
            return True
    return False
