"""Drive the worker against a plan until completion, a limit, cancellation, or a fatal error."""

from __future__ import annotations

import os
import signal
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .config import RalphConfig
from .constants import (
    EXIT_CANCELLED,
    EXIT_OK,
    EXIT_WORKER_FAILURE,
    LOCKS_DIR,
    MAX_ITERATIONS_MAX,
    RUNS_DIR,
)
from .dispatcher import NotificationDispatcher
from .errors import ValidationError
from .io_utils import _read_text
from .lock import LockHeartbeat, LockManager
from .models import LoopOutcome, LoopResult, NotificationEvent, PlanIdentity, RunMode, Severity
from .progress import ensure_progress_file, is_complete, plan_disables_commits, read_progress
from .prompts import load_template, render_prompt
from .validation import validate_path
from .worker import WorkerResult, run_worker

DispatcherFactory = Callable[[RalphConfig], Any]
WorkerRunner = Callable[..., WorkerResult]


@dataclass
class _RunContext:
    identity: PlanIdentity
    mode: RunMode
    max_iterations: int
    progress_path: Path
    template: str
    auto_commit: bool
    dispatcher: Any
    repo_name: str
    iterations: int = 0


class TaskLoopController:
    """Run one plan to a terminal state while holding its lock.

    Args:
        config: Process configuration.
        workdir: Directory the worker runs in and where the progress file lives.
        dispatcher_factory: Builds the notification dispatcher for a run.
        lock_manager: Defaults to a manager under `<state_dir>/locks`.
        worker_runner: Runs one worker iteration; replaced in tests.
        handle_signals: Turn SIGINT/SIGTERM into a cancellation request
            while `run()` is active. Ignored off the main thread.
    """

    def __init__(
        self,
        config: RalphConfig,
        *,
        workdir: Optional[Path] = None,
        dispatcher_factory: DispatcherFactory = NotificationDispatcher.from_config,
        lock_manager: Optional[LockManager] = None,
        worker_runner: WorkerRunner = run_worker,
        handle_signals: bool = True,
        quiet_worker: bool = False,
    ):
        self.config = config
        self.workdir = (workdir or Path.cwd()).resolve()
        self._dispatcher_factory = dispatcher_factory
        self._locks = lock_manager or LockManager(
            config.state_dir / LOCKS_DIR, stale_seconds=config.lock_stale_seconds
        )
        self._worker_runner = worker_runner
        self._handle_signals = handle_signals
        self._quiet_worker = quiet_worker
        self._cancel = threading.Event()

    def request_cancel(self) -> None:
        """Ask the loop to stop at the next iteration boundary."""
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def _install_signal_handlers(self) -> Callable[[], None]:
        if not self._handle_signals or threading.current_thread() is not threading.main_thread():
            return lambda: None

        def _handler(signum, frame):
            if self._cancel.is_set():
                raise KeyboardInterrupt
            logger.warning("Received {}; stopping after the current iteration", signal.Signals(signum).name)
            self._cancel.set()

        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, _handler)

        def _restore() -> None:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

        return _restore

    def _event(self, ctx: _RunContext, title: str, severity: Severity, message: str = "", **extra: Any) -> NotificationEvent:
        metadata = {"Plan": ctx.identity.name, "Mode": ctx.mode.value, "Repo": ctx.repo_name}
        metadata.update(extra)
        return NotificationEvent(message=message, severity=severity, title=title, metadata=metadata)

    def _notify(self, ctx: _RunContext, event: NotificationEvent) -> None:
        try:
            ctx.dispatcher.dispatch(event)
        except Exception as exc:
            logger.error("Notification dispatch raised: {}", exc)

    def run(self, plan_path: Path | str, mode: RunMode = RunMode.BUILD, max_iterations: int = 0) -> LoopResult:
        """Run the loop for `plan_path`.

        Raises:
            ValidationError: If the plan file or the iteration cap is invalid.
            ConfigError: If a configured prompt template is missing.
            LockContentionError: If another live process is working on the same plan.
        """
        if max_iterations < 0 or max_iterations > MAX_ITERATIONS_MAX:
            raise ValidationError(f"max iterations must be between 0 and {MAX_ITERATIONS_MAX}: {max_iterations}")
        ok, detail = validate_path(plan_path, "read")
        if not ok:
            raise ValidationError(f"Plan file not usable: {detail}")
        identity = PlanIdentity.from_path(detail)
        template = load_template(mode, self.config.prompt_dir)
        auto_commit = self.config.auto_commit and not plan_disables_commits(_read_text(identity.path))
        if self.config.auto_commit and not auto_commit:
            logger.info("Plan contains DO_NOT_COMMIT; commits disabled for this run")

        handle = self._locks.acquire(identity, timeout=self.config.lock_timeout)
        heartbeat = LockHeartbeat(self._locks, handle, interval=min(60.0, self.config.lock_stale_seconds / 4))
        heartbeat.start()
        self._cancel.clear()
        restore_signals = self._install_signal_handlers()
        dispatcher = None
        ctx: Optional[_RunContext] = None
        result = LoopResult(LoopOutcome.ERROR, 0, EXIT_WORKER_FAILURE, "loop did not start")
        try:
            dispatcher = self._dispatcher_factory(self.config)
            ctx = _RunContext(
                identity=identity,
                mode=mode,
                max_iterations=max_iterations,
                progress_path=self.workdir / identity.progress_filename,
                template=template,
                auto_commit=auto_commit,
                dispatcher=dispatcher,
                repo_name=self.workdir.name,
            )
            if ensure_progress_file(ctx.progress_path, identity.name, mode):
                logger.info("Created progress file {}", ctx.progress_path)
            self._notify(ctx, self._event(ctx, ":rocket: Ralph Started", Severity.INFO))
            result = self._loop(ctx)
        except KeyboardInterrupt:
            result = LoopResult(LoopOutcome.CANCELLED, ctx.iterations if ctx else 0, EXIT_CANCELLED, "interrupted")
        except Exception as exc:
            logger.exception("Loop failed: {}", exc)
            result = LoopResult(
                LoopOutcome.ERROR, ctx.iterations if ctx else 0, EXIT_WORKER_FAILURE, f"{exc.__class__.__name__}: {exc}"
            )
        finally:
            restore_signals()
            try:
                if ctx is not None:
                    self._notify(ctx, self._terminal_event(ctx, result))
                if dispatcher is not None:
                    dispatcher.close()
            finally:
                heartbeat.stop()
                self._locks.release(heartbeat.handle)
        logger.info("Loop finished: {} after {} iteration(s)", result.outcome.value, result.iterations)
        return result

    def _terminal_event(self, ctx: _RunContext, result: LoopResult) -> NotificationEvent:
        iterations = str(result.iterations)
        if result.outcome is LoopOutcome.DONE:
            return self._event(ctx, ":white_check_mark: Ralph Complete!", Severity.INFO, Iterations=iterations)
        if result.outcome is LoopOutcome.PLANNED:
            return self._event(ctx, ":white_check_mark: Ralph Planning Complete", Severity.INFO, Iterations=iterations)
        if result.outcome is LoopOutcome.LIMIT_REACHED:
            return self._event(
                ctx,
                ":warning: Ralph Stopped",
                Severity.WARNING,
                Reason=f"Max iterations reached ({ctx.max_iterations})",
                Iterations=iterations,
            )
        if result.outcome is LoopOutcome.CANCELLED:
            return self._event(ctx, ":stop_sign: Ralph Cancelled", Severity.WARNING, Iterations=iterations)
        return self._event(ctx, ":x: Ralph Failed", Severity.ERROR, result.detail, Iterations=iterations)

    def _run_iteration(self, ctx: _RunContext) -> WorkerResult:
        ctx.iterations += 1
        logger.info("══════ Iteration {} ({}) ══════", ctx.iterations, ctx.identity.name)
        prompt = render_prompt(
            ctx.template,
            plan_file=ctx.identity.path,
            progress_file=ctx.progress_path,
            plan_name=ctx.identity.name,
            auto_commit=ctx.auto_commit,
        )
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        run_dir = self.config.state_dir / RUNS_DIR / ctx.identity.key / f"{ctx.iterations:04d}-{stamp}-{os.getpid()}"
        result = self._worker_runner(
            self.config.worker_command,
            prompt,
            self.workdir,
            run_dir,
            self.config.worker_timeout,
            quiet=self._quiet_worker,
        )
        if result.ok:
            logger.info("Iteration {} complete ({:.0f}s)", ctx.iterations, result.runtime_seconds)
        else:
            logger.warning(
                "Worker failed on iteration {} (exit {}{}); logs in {}",
                ctx.iterations,
                result.exit_code,
                ", timed out" if result.timed_out else "",
                result.stderr_path.parent,
            )
        return result

    def _loop(self, ctx: _RunContext) -> LoopResult:
        if ctx.mode is RunMode.PLAN:
            worker = self._run_iteration(ctx)
            state = read_progress(ctx.progress_path)
            detail = state.summary()
            if not worker.ok:
                logger.warning("Planning worker exited with code {}, ending the planning run anyway", worker.exit_code)
                detail = f"{detail}; worker exit {worker.exit_code}"
            return LoopResult(LoopOutcome.PLANNED, ctx.iterations, EXIT_OK, detail)

        consecutive_failures = 0
        last_signature: Optional[str] = None
        while True:
            state = read_progress(ctx.progress_path)
            if is_complete(state):
                return LoopResult(LoopOutcome.DONE, ctx.iterations, EXIT_OK, state.summary())
            if self._cancel.is_set():
                return LoopResult(LoopOutcome.CANCELLED, ctx.iterations, EXIT_CANCELLED, "cancelled by operator")
            if ctx.max_iterations and ctx.iterations >= ctx.max_iterations:
                return LoopResult(LoopOutcome.LIMIT_REACHED, ctx.iterations, EXIT_OK, state.summary())

            worker = self._run_iteration(ctx)
            if worker.ok:
                consecutive_failures, last_signature = 0, None
            else:
                signature = worker.failure_signature()
                consecutive_failures = consecutive_failures + 1 if signature == last_signature else 1
                last_signature = signature
                if consecutive_failures >= self.config.max_worker_failures:
                    return LoopResult(
                        LoopOutcome.ERROR,
                        ctx.iterations,
                        EXIT_WORKER_FAILURE,
                        f"worker failed {consecutive_failures} times in a row ({signature})",
                    )

            state = read_progress(ctx.progress_path)
            if ctx.iterations % self.config.notify_frequency == 0:
                self._notify(
                    ctx,
                    self._event(
                        ctx,
                        f":gear: Ralph Progress: Iteration {ctx.iterations} completed",
                        Severity.PROGRESS,
                        Progress=state.summary(),
                    ),
                )
            if is_complete(state):
                continue
            self._cancel.wait(self.config.iteration_delay)
