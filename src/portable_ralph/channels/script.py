"""Run a user-supplied notification script with the message as its only argument."""

from __future__ import annotations

import os
import signal
import subprocess
import tempfile
import time
from typing import Optional

from loguru import logger

from ..config import CustomScriptConfig
from ..constants import SCRIPT_KILL_GRACE_SECONDS
from ..errors import FatalDeliveryError, ScriptTimeoutError, ValidationError
from ..models import NotificationEvent
from ..validation import validate_path
from .base import Channel, replace_emoji

SCRIPT_MAX_ARGUMENT = 4000


def sanitize_argument(text: str) -> str:
    """Drop control characters other than newline and tab, and bound the length."""
    cleaned = "".join(ch for ch in text if ch in "\n\t" or (ord(ch) >= 32 and ord(ch) != 127))
    return cleaned[:SCRIPT_MAX_ARGUMENT]


def _terminate(proc: subprocess.Popen, grace: float) -> None:
    """Stop the script and anything it spawned: SIGTERM, then SIGKILL after `grace`."""
    if os.name == "nt":
        proc.kill()
        proc.wait()
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        pass
    try:
        proc.wait(timeout=grace)
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    proc.wait()


class CustomScriptChannel(Channel):
    """Deliver events through an executable on the local machine.

    The script gets the rendered text as a single argv element; it is never
    passed through a shell. A non-zero exit is logged but still counts as
    delivered. A script that outlives its timeout is killed together with its
    process group.
    """

    name = "custom_script"
    retryable = False

    def __init__(self, config: CustomScriptConfig, *, grace_seconds: float = SCRIPT_KILL_GRACE_SECONDS):
        self.config = config
        self._grace = grace_seconds
        self._canonical: Optional[str] = None

    def validate(self) -> None:
        ok, result = validate_path(self.config.script_path, "execute")
        if not ok:
            raise ValidationError(f"custom notify script rejected: {result}")
        self._canonical = result

    def deliver(self, event: NotificationEvent) -> str:
        if self._canonical is None:
            self.validate()
        argument = sanitize_argument(replace_emoji(event.render_text()))
        timeout = self.config.timeout_seconds
        started = time.monotonic()
        with tempfile.TemporaryFile(mode="w+b") as stderr_file:
            try:
                proc = subprocess.Popen(
                    [self._canonical, argument],
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=stderr_file,
                    start_new_session=os.name != "nt",
                    close_fds=True,
                )
            except OSError as exc:
                raise FatalDeliveryError(f"custom_script: cannot start {self._canonical}: {exc}") from exc
            try:
                returncode = proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                _terminate(proc, self._grace)
                raise ScriptTimeoutError(f"custom_script: killed after {timeout:g}s") from None
            stderr_file.seek(0)
            stderr_tail = stderr_file.read()[-500:].decode("utf-8", errors="replace").strip()

        elapsed = time.monotonic() - started
        if returncode != 0:
            logger.warning(
                "Notify script {} exited {} after {:.1f}s{}",
                self._canonical,
                returncode,
                elapsed,
                f": {stderr_tail}" if stderr_tail else "",
            )
        return f"exit {returncode}"
