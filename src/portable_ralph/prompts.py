"""Build the prompt passed to the worker on each iteration."""

from __future__ import annotations

from pathlib import Path
from string import Template
from typing import Optional

from loguru import logger

from .errors import ConfigError
from .io_utils import _read_text
from .models import RunMode

PLAN_TEMPLATE_NAME = "PROMPT_plan.md"
BUILD_TEMPLATE_NAME = "PROMPT_build.md"

COMMIT_ENABLED_INSTRUCTIONS = """\
After completing a task and verifying it works, create a git commit with a
clear message describing the change. Commit only the files you changed for
that task."""

COMMIT_DISABLED_INSTRUCTIONS = """\
Do NOT create git commits. Leave all changes uncommitted for the operator to
review."""

PLAN_TEMPLATE = """\
You are in PLANNING mode for the plan in ${PLAN_FILE}.

1. Read ${PLAN_FILE} and study the repository it refers to.
2. Break the work into small, independently verifiable tasks.
3. Write the task list to ${PROGRESS_FILE} as markdown checkboxes under a
   `## Tasks` heading, one `- [ ] <task>` line per task, in execution order.
4. Under the `## Status` heading of ${PROGRESS_FILE}, replace the status line
   with `IN_PROGRESS` so the build loop can start.

Do not implement anything yet. Do not write the completion marker.
Plan name: ${PLAN_NAME}
"""

BUILD_TEMPLATE = """\
You are in BUILD mode for the plan in ${PLAN_FILE}.

1. Read ${PLAN_FILE} and ${PROGRESS_FILE}.
2. Pick the FIRST unchecked task (`- [ ]`) in ${PROGRESS_FILE} and implement
   only that task.
3. Verify it: run the relevant tests or checks.
4. Mark it done (`- [x]`) in ${PROGRESS_FILE} and add a short note of what
   changed under `## Tasks Completed`.

${COMMIT_INSTRUCTIONS}

When every task is checked and verified, add a line containing exactly
RALPH_DONE (on its own line, nothing else) to ${PROGRESS_FILE}.
Plan name: ${PLAN_NAME}
"""

_BUILT_IN = {RunMode.PLAN: PLAN_TEMPLATE, RunMode.BUILD: BUILD_TEMPLATE}


def template_name(mode: RunMode) -> str:
    return PLAN_TEMPLATE_NAME if mode is RunMode.PLAN else BUILD_TEMPLATE_NAME


def load_template(mode: RunMode, prompt_dir: Optional[Path] = None) -> str:
    """Return the template text, preferring `prompt_dir/PROMPT_<mode>.md` when configured.

    Raises:
        ConfigError: If `prompt_dir` is set but the template is missing or empty.
    """
    if prompt_dir is None:
        return _BUILT_IN[mode]
    path = prompt_dir / template_name(mode)
    text = _read_text(path)
    if not text.strip():
        raise ConfigError(f"Prompt template not found or empty: {path}")
    logger.debug("Using prompt template {}", path)
    return text


def render_prompt(
    template: str,
    *,
    plan_file: Path,
    progress_file: Path,
    plan_name: str,
    auto_commit: bool,
) -> str:
    """Substitute `${PLAN_FILE}`, `${PROGRESS_FILE}`, `${PLAN_NAME}` and `${COMMIT_INSTRUCTIONS}`.

    Unknown `${...}` placeholders are left untouched.
    """
    return Template(template).safe_substitute(
        PLAN_FILE=str(plan_file),
        PROGRESS_FILE=str(progress_file),
        PLAN_NAME=plan_name,
        COMMIT_INSTRUCTIONS=COMMIT_ENABLED_INSTRUCTIONS if auto_commit else COMMIT_DISABLED_INSTRUCTIONS,
    )
