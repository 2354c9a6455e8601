"""Run the external worker command for one loop iteration."""

from __future__ import annotations

import shlex
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .io_utils import _atomic_write_text, _read_text
from .utils import _now_iso

# Exit code reported when the worker executable cannot be started.
EXIT_NOT_STARTED = 127


@dataclass(frozen=True)
class WorkerResult:
    command: str
    exit_code: int
    timed_out: bool
    runtime_seconds: float
    start_time: str
    end_time: str
    stdout_path: Path
    stderr_path: Path
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def failure_signature(self) -> str:
        """Identify a failure so repeated identical failures can be counted."""
        if self.error:
            return f"error:{self.error}"
        if self.timed_out:
            return "timeout"
        last_line = ""
        for line in reversed(_read_text(self.stderr_path).splitlines()):
            if line.strip():
                last_line = line.strip()
                break
        return f"exit:{self.exit_code}:{last_line[:200]}"


def _stream_pipe(pipe: Any, file_path: Path, label: str, to_stderr: bool, quiet: bool = False) -> None:
    with open(file_path, "w", encoding="utf-8") as handle:
        for line in iter(pipe.readline, ""):
            handle.write(line)
            handle.flush()
            if quiet:
                continue
            stream = sys.stderr if to_stderr else sys.stdout
            stream.write(line)
            stream.flush()
    try:
        pipe.close()
    except OSError:
        logger.debug("Closing worker {} pipe failed", label)


def build_command(command: str, prompt: str, prompt_path: Path, project_dir: Path, run_dir: Path) -> tuple[list[str], bool]:
    """Expand placeholders and split the worker command.

    Returns:
        The argv list and whether the prompt must be written to stdin, which is
        the case whenever the command has no `{prompt_file}` or `{prompt}` placeholder.

    Raises:
        ValueError: If the command has an unknown placeholder or is empty.
    """
    values = {
        "prompt_file": str(prompt_path),
        "project_dir": str(project_dir),
        "run_dir": str(run_dir),
        "prompt": prompt,
    }
    # Split before substituting so a prompt containing quotes stays one argument.
    try:
        parts = [part.format(**values) for part in shlex.split(command)]
    except (KeyError, IndexError) as exc:
        raise ValueError(f"Unknown placeholder in worker command: {exc}") from exc
    if not parts:
        raise ValueError("Worker command is empty")
    uses_placeholder = "{prompt_file}" in command or "{prompt}" in command
    return parts, not uses_placeholder


def run_worker(
    command: str,
    prompt: str,
    project_dir: Path,
    run_dir: Path,
    timeout_seconds: float,
    *,
    quiet: bool = False,
    kill_grace_seconds: float = 5.0,
) -> WorkerResult:
    """Run the worker once, streaming its output to the console and to `run_dir`.

    The worker is terminated, then killed, if it runs past `timeout_seconds`.
    """
    run_dir.mkdir(parents=True, exist_ok=True)
    prompt_path = run_dir / "prompt.txt"
    _atomic_write_text(prompt_path, prompt)
    stdout_path = run_dir / "stdout.log"
    stderr_path = run_dir / "stderr.log"

    parts, use_stdin = build_command(command, prompt, prompt_path, project_dir, run_dir)
    start_iso = _now_iso()
    start_time = time.monotonic()

    try:
        process = subprocess.Popen(
            parts,
            cwd=project_dir,
            stdin=subprocess.PIPE if use_stdin else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except OSError as exc:
        stderr_path.write_text(f"{exc}\n", encoding="utf-8")
        stdout_path.write_text("", encoding="utf-8")
        logger.error("Could not start worker {}: {}", parts[0], exc)
        return WorkerResult(
            command=" ".join(parts[:1]),
            exit_code=EXIT_NOT_STARTED,
            timed_out=False,
            runtime_seconds=0.0,
            start_time=start_iso,
            end_time=_now_iso(),
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            error=f"{exc.__class__.__name__}: {parts[0]}",
        )

    stdout_thread = threading.Thread(
        target=_stream_pipe,
        args=(process.stdout, stdout_path, "stdout", False, quiet),
        daemon=True,
    )
    stderr_thread = threading.Thread(
        target=_stream_pipe,
        args=(process.stderr, stderr_path, "stderr", True, quiet),
        daemon=True,
    )
    stdout_thread.start()
    stderr_thread.start()

    if use_stdin and process.stdin:
        try:
            process.stdin.write(prompt)
            process.stdin.flush()
        except BrokenPipeError:
            logger.debug("Worker closed stdin before the prompt was fully written")
        finally:
            try:
                process.stdin.close()
            except BrokenPipeError:
                pass

    timed_out = False
    try:
        process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.warning("Worker exceeded {}s; terminating", timeout_seconds)
        process.terminate()
        try:
            process.wait(timeout=kill_grace_seconds)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    stdout_thread.join(timeout=5)
    stderr_thread.join(timeout=5)

    exit_code = process.returncode if process.returncode is not None else -1
    return WorkerResult(
        command=parts[0],
        exit_code=exit_code,
        timed_out=timed_out,
        runtime_seconds=time.monotonic() - start_time,
        start_time=start_iso,
        end_time=_now_iso(),
        stdout_path=stdout_path,
        stderr_path=stderr_path,
    )
