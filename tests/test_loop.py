"""Test the task loop controller with a scripted worker and a recording dispatcher."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from portable_ralph.config import RalphConfig
from portable_ralph.errors import LockContentionError, ValidationError
from portable_ralph.lock import LockManager
from portable_ralph.loop import TaskLoopController
from portable_ralph.models import LoopOutcome, NotificationEvent, PlanIdentity, RunMode, Severity
from portable_ralph.prompts import COMMIT_DISABLED_INSTRUCTIONS
from portable_ralph.worker import WorkerResult


class RecordingDispatcher:
    def __init__(self, fail: bool = False):
        self.events: list[NotificationEvent] = []
        self.closed = False
        self.fail = fail

    def dispatch(self, event: NotificationEvent) -> None:
        self.events.append(event)
        if self.fail:
            raise RuntimeError("dispatcher exploded")

    def close(self) -> list:
        self.closed = True
        return []

    @property
    def titles(self) -> list[str]:
        return [event.title for event in self.events]


class ScriptedWorker:
    """Fake worker; `behaviour(n, progress_path)` returns the exit code for call n."""

    def __init__(self, progress_path: Path, behaviour: Callable[[int, Path], int] = lambda n, path: 0):
        self.progress_path = progress_path
        self.behaviour = behaviour
        self.prompts: list[str] = []
        self.stderr_text: Callable[[int], str] = lambda n: "boom"

    def __call__(self, command, prompt, project_dir, run_dir, timeout_seconds, *, quiet=False) -> WorkerResult:
        self.prompts.append(prompt)
        n = len(self.prompts)
        run_dir.mkdir(parents=True, exist_ok=True)
        stderr_path = run_dir / "stderr.log"
        exit_code = self.behaviour(n, self.progress_path)
        stderr_path.write_text(self.stderr_text(n) if exit_code else "")
        return WorkerResult(
            command=command,
            exit_code=exit_code,
            timed_out=False,
            runtime_seconds=0.1,
            start_time="",
            end_time="",
            stdout_path=run_dir / "stdout.log",
            stderr_path=stderr_path,
        )


def _finish_on(call: int) -> Callable[[int, Path], int]:
    def _behaviour(n: int, progress_path: Path) -> int:
        if n == call:
            with progress_path.open("a", encoding="utf-8") as handle:
                handle.write("\nRALPH_DONE\n")
        return 0

    return _behaviour


@pytest.fixture
def workspace(tmp_path: Path):
    workdir = tmp_path / "repo"
    workdir.mkdir()
    plan = workdir / "feature.md"
    plan.write_text("# Feature\n\nBuild the thing.\n")
    config = RalphConfig(
        state_dir=tmp_path / "state",
        iteration_delay=0,
        notify_frequency=2,
        max_worker_failures=3,
    )
    return config, workdir, plan


def _controller(
    config: RalphConfig,
    workdir: Path,
    worker: ScriptedWorker,
    dispatcher: Optional[RecordingDispatcher] = None,
) -> tuple[TaskLoopController, RecordingDispatcher]:
    dispatcher = dispatcher or RecordingDispatcher()
    controller = TaskLoopController(
        config,
        workdir=workdir,
        dispatcher_factory=lambda cfg: dispatcher,
        worker_runner=worker,
        handle_signals=False,
    )
    return controller, dispatcher


def _lock_exists(config: RalphConfig, plan: Path) -> bool:
    manager = LockManager(config.state_dir / "locks", stale_seconds=config.lock_stale_seconds)
    return manager.lock_path(PlanIdentity.from_path(plan)).exists()


class TestBuildMode:
    def test_runs_until_completion_marker(self, workspace) -> None:
        config, workdir, plan = workspace
        worker = ScriptedWorker(workdir / "feature_PROGRESS.md", _finish_on(3))
        controller, dispatcher = _controller(config, workdir, worker)

        result = controller.run(plan)

        assert result.outcome is LoopOutcome.DONE
        assert result.exit_code == 0
        assert result.iterations == 3
        assert dispatcher.titles[0] == ":rocket: Ralph Started"
        assert dispatcher.titles[-1] == ":white_check_mark: Ralph Complete!"
        assert dispatcher.closed
        assert not _lock_exists(config, plan)

    def test_already_complete_plan_runs_no_iterations(self, workspace) -> None:
        config, workdir, plan = workspace
        (workdir / "feature_PROGRESS.md").write_text("## Status\n\nRALPH_DONE\n")
        worker = ScriptedWorker(workdir / "feature_PROGRESS.md")
        controller, _ = _controller(config, workdir, worker)

        result = controller.run(plan)

        assert result.outcome is LoopOutcome.DONE
        assert result.iterations == 0
        assert worker.prompts == []

    def test_stops_at_iteration_limit(self, workspace) -> None:
        config, workdir, plan = workspace
        worker = ScriptedWorker(workdir / "feature_PROGRESS.md")
        controller, dispatcher = _controller(config, workdir, worker)

        result = controller.run(plan, max_iterations=5)

        assert result.outcome is LoopOutcome.LIMIT_REACHED
        assert result.exit_code == 0
        assert result.iterations == 5
        final = dispatcher.events[-1]
        assert final.title == ":warning: Ralph Stopped"
        assert final.severity is Severity.WARNING
        assert final.metadata["Reason"] == "Max iterations reached (5)"

    def test_progress_events_every_nth_iteration(self, workspace) -> None:
        config, workdir, plan = workspace
        worker = ScriptedWorker(workdir / "feature_PROGRESS.md")
        controller, dispatcher = _controller(config, workdir, worker)

        controller.run(plan, max_iterations=5)

        progress = [event for event in dispatcher.events if event.severity is Severity.PROGRESS]
        assert [event.title for event in progress] == [
            ":gear: Ralph Progress: Iteration 2 completed",
            ":gear: Ralph Progress: Iteration 4 completed",
        ]
        assert progress[0].metadata["Plan"] == "feature"
        assert progress[0].metadata["Repo"] == "repo"

    def test_creates_progress_file(self, workspace) -> None:
        config, workdir, plan = workspace
        worker = ScriptedWorker(workdir / "feature_PROGRESS.md")
        controller, _ = _controller(config, workdir, worker)
        controller.run(plan, max_iterations=1)
        assert "# Progress: feature" in (workdir / "feature_PROGRESS.md").read_text()

    def test_do_not_commit_directive_reaches_prompt(self, workspace) -> None:
        config, workdir, plan = workspace
        plan.write_text("# Feature\n\nDO_NOT_COMMIT\n")
        worker = ScriptedWorker(workdir / "feature_PROGRESS.md")
        controller, _ = _controller(config, workdir, worker)
        controller.run(plan, max_iterations=1)
        assert COMMIT_DISABLED_INSTRUCTIONS in worker.prompts[0]
        assert str(plan.resolve()) in worker.prompts[0]


class TestFailures:
    def test_repeated_identical_failures_end_the_loop(self, workspace) -> None:
        config, workdir, plan = workspace
        worker = ScriptedWorker(workdir / "feature_PROGRESS.md", lambda n, path: 1)
        controller, dispatcher = _controller(config, workdir, worker)

        result = controller.run(plan, max_iterations=10)

        assert result.outcome is LoopOutcome.ERROR
        assert result.exit_code == 3
        assert result.iterations == 3
        assert dispatcher.events[-1].title == ":x: Ralph Failed"
        assert dispatcher.events[-1].severity is Severity.ERROR
        assert not _lock_exists(config, plan)

    def test_different_failures_do_not_accumulate(self, workspace) -> None:
        config, workdir, plan = workspace
        worker = ScriptedWorker(workdir / "feature_PROGRESS.md", lambda n, path: 1)
        worker.stderr_text = lambda n: f"error {n}"
        controller, _ = _controller(config, workdir, worker)

        result = controller.run(plan, max_iterations=5)

        assert result.outcome is LoopOutcome.LIMIT_REACHED
        assert result.iterations == 5

    def test_worker_exception_is_reported_and_lock_released(self, workspace) -> None:
        config, workdir, plan = workspace

        def _crash(n: int, path: Path) -> int:
            raise RuntimeError("disk on fire")

        controller, dispatcher = _controller(config, workdir, ScriptedWorker(workdir / "feature_PROGRESS.md", _crash))
        result = controller.run(plan)

        assert result.outcome is LoopOutcome.ERROR
        assert result.exit_code == 3
        assert "disk on fire" in result.detail
        assert dispatcher.closed
        assert not _lock_exists(config, plan)

    def test_dispatcher_errors_never_stop_the_loop(self, workspace) -> None:
        config, workdir, plan = workspace
        worker = ScriptedWorker(workdir / "feature_PROGRESS.md", _finish_on(2))
        controller, _ = _controller(config, workdir, worker, RecordingDispatcher(fail=True))

        result = controller.run(plan)

        assert result.outcome is LoopOutcome.DONE
        assert result.iterations == 2


class TestLocking:
    def test_second_run_on_same_plan_is_refused(self, workspace) -> None:
        config, workdir, plan = workspace
        manager = LockManager(config.state_dir / "locks", stale_seconds=config.lock_stale_seconds)
        handle = manager.acquire(PlanIdentity.from_path(plan))
        worker = ScriptedWorker(workdir / "feature_PROGRESS.md")
        controller, dispatcher = _controller(config, workdir, worker)
        try:
            with pytest.raises(LockContentionError):
                controller.run(plan)
        finally:
            manager.release(handle)
        assert worker.prompts == []
        assert dispatcher.events == []

    def test_lock_is_released_after_success(self, workspace) -> None:
        config, workdir, plan = workspace
        worker = ScriptedWorker(workdir / "feature_PROGRESS.md", _finish_on(1))
        controller, _ = _controller(config, workdir, worker)
        controller.run(plan)
        assert not _lock_exists(config, plan)
        # The plan can be run again straight away.
        assert controller.run(plan).outcome is LoopOutcome.DONE


class TestCancellation:
    def test_cancel_stops_at_iteration_boundary(self, workspace) -> None:
        config, workdir, plan = workspace
        controller: Optional[TaskLoopController] = None

        def _cancel_first(n: int, path: Path) -> int:
            controller.request_cancel()
            return 0

        worker = ScriptedWorker(workdir / "feature_PROGRESS.md", _cancel_first)
        controller, dispatcher = _controller(config, workdir, worker)

        result = controller.run(plan)

        assert result.outcome is LoopOutcome.CANCELLED
        assert result.exit_code == 130
        assert result.iterations == 1
        assert dispatcher.events[-1].title == ":stop_sign: Ralph Cancelled"
        assert not _lock_exists(config, plan)

    def test_keyboard_interrupt_is_cancellation(self, workspace) -> None:
        config, workdir, plan = workspace

        def _interrupt(n: int, path: Path) -> int:
            raise KeyboardInterrupt

        controller, _ = _controller(config, workdir, ScriptedWorker(workdir / "feature_PROGRESS.md", _interrupt))
        result = controller.run(plan)
        assert result.outcome is LoopOutcome.CANCELLED
        assert result.exit_code == 130


class TestPlanMode:
    def test_single_planning_iteration(self, workspace) -> None:
        config, workdir, plan = workspace
        worker = ScriptedWorker(workdir / "feature_PROGRESS.md")
        controller, dispatcher = _controller(config, workdir, worker)

        result = controller.run(plan, mode=RunMode.PLAN)

        assert result.outcome is LoopOutcome.PLANNED
        assert result.exit_code == 0
        assert result.iterations == 1
        assert "PLANNING mode" in worker.prompts[0]
        assert dispatcher.titles[-1] == ":white_check_mark: Ralph Planning Complete"

    def test_failed_planning_worker_still_ends_planned(self, workspace) -> None:
        config, workdir, plan = workspace
        worker = ScriptedWorker(workdir / "feature_PROGRESS.md", lambda n, path: 2)
        controller, dispatcher = _controller(config, workdir, worker)

        result = controller.run(plan, mode=RunMode.PLAN)

        assert result.outcome is LoopOutcome.PLANNED
        assert result.exit_code == 0
        assert result.iterations == 1
        assert "worker exit 2" in result.detail
        assert dispatcher.titles[-1] == ":white_check_mark: Ralph Planning Complete"


class TestInputValidation:
    def test_missing_plan_is_rejected(self, workspace) -> None:
        config, workdir, _ = workspace
        controller, _ = _controller(config, workdir, ScriptedWorker(workdir / "x"))
        with pytest.raises(ValidationError):
            controller.run(workdir / "missing.md")

    @pytest.mark.parametrize("limit", [-1, 10001])
    def test_iteration_cap_out_of_range(self, workspace, limit: int) -> None:
        config, workdir, plan = workspace
        controller, _ = _controller(config, workdir, ScriptedWorker(workdir / "x"))
        with pytest.raises(ValidationError):
            controller.run(plan, max_iterations=limit)
