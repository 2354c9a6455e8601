"""Test running the external worker process."""

from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from portable_ralph.worker import build_command, run_worker

PYTHON = shlex.quote(sys.executable)


def _run(tmp_path: Path, command: str, prompt: str = "hello worker", timeout: float = 30):
    project_dir = tmp_path / "repo"
    project_dir.mkdir(exist_ok=True)
    return run_worker(command, prompt, project_dir, tmp_path / "run", timeout, quiet=True, kill_grace_seconds=1.0)


class TestRunWorker:
    def test_prompt_is_sent_on_stdin(self, tmp_path: Path) -> None:
        result = _run(tmp_path, f'{PYTHON} -c "import sys; print(sys.stdin.read().upper())"')

        assert result.ok
        assert result.exit_code == 0
        assert "HELLO WORKER" in result.stdout_path.read_text()
        assert (tmp_path / "run" / "prompt.txt").read_text() == "hello worker"

    def test_prompt_file_placeholder(self, tmp_path: Path) -> None:
        command = f'{PYTHON} -c "import sys; print(open(sys.argv[1]).read())" {{prompt_file}}'
        result = _run(tmp_path, command, prompt="from a file")
        assert result.ok
        assert "from a file" in result.stdout_path.read_text()

    def test_runs_in_project_dir(self, tmp_path: Path) -> None:
        result = _run(tmp_path, f'{PYTHON} -c "import os; print(os.getcwd())"')
        assert Path(result.stdout_path.read_text().strip()).resolve() == (tmp_path / "repo").resolve()

    def test_failure_signature_uses_last_stderr_line(self, tmp_path: Path) -> None:
        result = _run(tmp_path, f"{PYTHON} -c \"import sys; sys.stderr.write('warming up\\nbad thing\\n'); sys.exit(4)\"")

        assert not result.ok
        assert result.exit_code == 4
        assert result.failure_signature() == "exit:4:bad thing"

    def test_timeout_terminates_worker(self, tmp_path: Path) -> None:
        result = _run(tmp_path, f'{PYTHON} -c "import time; time.sleep(30)"', timeout=0.5)

        assert result.timed_out
        assert not result.ok
        assert result.runtime_seconds < 10
        assert result.failure_signature() == "timeout"

    def test_missing_executable_is_reported(self, tmp_path: Path) -> None:
        result = _run(tmp_path, "ralph-worker-that-does-not-exist --flag")

        assert result.exit_code == 127
        assert not result.ok
        assert "ralph-worker-that-does-not-exist" in result.error
        assert result.failure_signature().startswith("error:")


class TestBuildCommand:
    def test_prompt_with_quotes_stays_one_argument(self, tmp_path: Path) -> None:
        prompt = "Don't \"break\" me"
        parts, use_stdin = build_command("worker --message {prompt}", prompt, tmp_path / "p.txt", tmp_path, tmp_path)
        assert parts == ["worker", "--message", prompt]
        assert use_stdin is False

    def test_no_placeholder_means_stdin(self, tmp_path: Path) -> None:
        parts, use_stdin = build_command("worker -p --dir {project_dir}", "x", tmp_path / "p.txt", tmp_path, tmp_path)
        assert parts == ["worker", "-p", "--dir", str(tmp_path)]
        assert use_stdin is True

    def test_unknown_placeholder_is_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            build_command("worker {model}", "x", tmp_path / "p.txt", tmp_path, tmp_path)

    def test_empty_command_is_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            build_command("   ", "x", tmp_path / "p.txt", tmp_path, tmp_path)
