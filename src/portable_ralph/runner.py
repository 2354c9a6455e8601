"""Command-line entry point for `ralph`."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Iterable

from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import RalphConfig, default_config_path, load_config, set_config_value
from .constants import (
    EXIT_INVALID_INPUT,
    EXIT_LOCK_CONTENTION,
    EXIT_OK,
    LOCKS_DIR,
    MAX_ITERATIONS_MAX,
    VERSION,
)
from .dispatcher import NotificationDispatcher
from .errors import ConfigError, LockContentionError, ValidationError
from .lock import LockManager
from .loop import TaskLoopController
from .models import DispatchOutcome, LoopOutcome, PlanIdentity, RunMode
from .progress import read_progress
from .validation import mask_secrets

console = Console()

_CHANNEL_LABELS = {
    "slack": "Slack",
    "discord": "Discord",
    "telegram": "Telegram",
    "email": "Email",
    "custom_script": "Custom script",
}


def _configure_logging(level: str = "INFO", secrets: Iterable[str] = ()) -> None:
    """Configure loguru with the given level, masking every secret in rendered messages."""
    masked = tuple(secret for secret in secrets if secret)

    def _mask(record) -> None:
        if masked:
            record["message"] = mask_secrets(record["message"], masked)

    logger.remove()
    logger.configure(patcher=_mask)
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


# Initialize with default level; will be reconfigured in main() once config is loaded
_configure_logging()


def _iterations_arg(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"max-iterations must be an integer: {value!r}") from None
    if number < 0 or number > MAX_ITERATIONS_MAX:
        raise argparse.ArgumentTypeError(f"max-iterations must be between 0 and {MAX_ITERATIONS_MAX}")
    return number


def _add_log_level(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging level (default: INFO)",
    )


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph",
        description="Ralph - run an AI worker against a plan until it writes RALPH_DONE",
        epilog=(
            "Other commands: ralph status <plan-file> | ralph notify test | "
            "ralph config commit on|off|status | ralph --version"
        ),
    )
    parser.add_argument("plan_file", type=Path, help="Markdown plan describing the work")
    parser.add_argument(
        "mode",
        nargs="?",
        default=RunMode.BUILD.value,
        choices=[mode.value for mode in RunMode],
        help="plan: write the task list once; build: implement tasks until done (default: build)",
    )
    parser.add_argument(
        "max_iterations",
        nargs="?",
        default=0,
        type=_iterations_arg,
        help="Stop after this many iterations (default: 0, unlimited)",
    )
    parser.add_argument(
        "--quiet-worker",
        action="store_true",
        help="Only log worker output to the run directory, not the console",
    )
    _add_log_level(parser)
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ralph status", description="Show progress and lock state for a plan")
    parser.add_argument("plan_file", type=Path)
    parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON")
    return parser


def _build_notify_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ralph notify", description="Notification utilities")
    parser.add_argument("action", choices=["test"], help="test: send a test message to every configured channel")
    _add_log_level(parser)
    return parser


def _build_config_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ralph config", description="Change persistent settings")
    parser.add_argument("setting", choices=["commit"])
    parser.add_argument("value", choices=["on", "off", "status"])
    return parser


def _load_config_or_report() -> RalphConfig | None:
    try:
        return load_config()
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        return None


def _print_banner(config: RalphConfig, plan_file: Path, mode: RunMode, max_iterations: int) -> None:
    identity = PlanIdentity.from_path(plan_file)
    channels = [_CHANNEL_LABELS[name] for name in config.configured_channels()]
    lines = [
        f"Plan:      [yellow]{plan_file}[/yellow]",
        f"Mode:      [yellow]{mode.value}[/yellow]",
        f"Progress:  [yellow]{identity.progress_filename}[/yellow]",
    ]
    if max_iterations:
        lines.append(f"Max iter:  [yellow]{max_iterations}[/yellow]")
    if channels:
        lines.append(f"Notify:    [green]{' '.join(channels)}[/green]")
    else:
        lines.append("Notify:    [yellow]disabled[/yellow] (set RALPH_* channel settings)")
    if not config.auto_commit:
        lines.append("Commits:   [yellow]disabled[/yellow]")
    lines.append("")
    lines.append(f"Add a line containing only RALPH_DONE to {identity.progress_filename} to finish; Ctrl+C to stop.")
    console.print(Panel("\n".join(lines), title="RALPH - Autonomous AI Development Loop", border_style="blue"))


def _run_command(args: argparse.Namespace) -> int:
    config = _load_config_or_report()
    if config is None:
        return EXIT_INVALID_INPUT
    _configure_logging(args.log_level, config.secrets())
    mode = RunMode(args.mode)
    if not args.plan_file.is_file():
        console.print(f"[red]Error:[/red] Plan file not found: {args.plan_file}")
        return EXIT_INVALID_INPUT

    _print_banner(config, args.plan_file, mode, args.max_iterations)
    controller = TaskLoopController(config, quiet_worker=bool(args.quiet_worker))
    try:
        result = controller.run(args.plan_file, mode, args.max_iterations)
    except (ValidationError, ConfigError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return EXIT_INVALID_INPUT
    except LockContentionError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return EXIT_LOCK_CONTENTION

    style = "green" if result.exit_code == EXIT_OK else "red"
    if result.outcome is LoopOutcome.LIMIT_REACHED:
        style = "yellow"
    console.print(f"[{style}]{result.outcome.value}[/{style}]: {result.detail}")
    console.print(f"Total iterations: {result.iterations}")
    return result.exit_code


def _status_command(plan_file: Path, *, as_json: bool = False) -> int:
    config = _load_config_or_report()
    if config is None:
        return EXIT_INVALID_INPUT
    if not plan_file.is_file():
        if as_json:
            sys.stdout.write(json.dumps({"status": "missing_plan", "plan_file": str(plan_file)}) + "\n")
        else:
            sys.stdout.write(f"Plan file not found: {plan_file}\n")
        return EXIT_INVALID_INPUT

    identity = PlanIdentity.from_path(plan_file)
    progress_path = Path.cwd() / identity.progress_filename
    state = read_progress(progress_path)
    locks = LockManager(config.state_dir / LOCKS_DIR, stale_seconds=config.lock_stale_seconds)
    owner = locks.read_owner(identity)

    payload = {
        "plan_file": str(identity.path),
        "plan_name": identity.name,
        "progress_file": str(progress_path),
        "progress_exists": progress_path.exists(),
        "status": state.status.value,
        "tasks_total": len(state.tasks),
        "tasks_complete": state.completed_tasks,
        "iterations": state.iteration_count,
        "lock": None,
    }
    if owner is not None:
        payload["lock"] = {
            "owner_pid": owner.owner_pid,
            "acquired_at": owner.acquired_at.isoformat(),
            "last_heartbeat": owner.last_heartbeat.isoformat(),
            "path": str(locks.lock_path(identity)),
        }

    if as_json:
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return EXIT_OK

    sys.stdout.write(f"Plan:     {identity.path}\n")
    sys.stdout.write(f"Progress: {progress_path}{'' if progress_path.exists() else ' (not created yet)'}\n")
    sys.stdout.write(f"Status:   {state.status.value}\n")
    if state.tasks:
        sys.stdout.write(f"Tasks:    {state.completed_tasks}/{len(state.tasks)} complete\n")
    if owner is not None:
        sys.stdout.write(f"Lock:     held by pid {owner.owner_pid} since {owner.acquired_at.isoformat()}\n")
    else:
        sys.stdout.write("Lock:     free\n")
    return EXIT_OK


def _notify_test_command(log_level: str = "INFO") -> int:
    config = _load_config_or_report()
    if config is None:
        return EXIT_INVALID_INPUT
    _configure_logging(log_level, config.secrets())
    if not config.configured_channels():
        console.print("[yellow]No notification channels configured.[/yellow] Set RALPH_SLACK_WEBHOOK_URL or similar.")
        return EXIT_INVALID_INPUT

    with NotificationDispatcher.from_config(config) as dispatcher:
        report = dispatcher.send_test()

    table = Table(title="Notification test")
    table.add_column("Channel")
    table.add_column("Result")
    table.add_column("Attempts", justify="right")
    table.add_column("Detail")
    colors = {DispatchOutcome.SUCCESS: "green", DispatchOutcome.SKIPPED: "yellow"}
    for channel_report in report.channels:
        color = colors.get(channel_report.outcome, "red")
        table.add_row(
            _CHANNEL_LABELS.get(channel_report.channel, channel_report.channel),
            f"[{color}]{channel_report.outcome.value}[/{color}]",
            str(channel_report.attempts),
            mask_secrets(channel_report.detail, config.secrets()),
        )
    console.print(table)
    return EXIT_OK if report.any_delivered else EXIT_INVALID_INPUT


def _config_command(setting: str, value: str) -> int:
    path = default_config_path()
    if value == "status":
        config = _load_config_or_report()
        if config is None:
            return EXIT_INVALID_INPUT
        state = "on" if config.auto_commit else "off"
        sys.stdout.write(f"Auto-commit: {state}\n")
        return EXIT_OK
    try:
        set_config_value(path, "AUTO_COMMIT", value == "on")
    except (ConfigError, OSError) as exc:
        console.print(f"[red]Could not update {path}:[/red] {exc}")
        return EXIT_INVALID_INPUT
    sys.stdout.write(f"Auto-commit turned {value} ({path})\n")
    return EXIT_OK


def main(argv: list[str] | None = None) -> None:
    """Run the `ralph` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Always, carrying the process exit code.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if argv:
        if argv[0] in ("--version", "-v"):
            sys.stdout.write(f"Ralph v{VERSION}\n")
            raise SystemExit(EXIT_OK)
        if argv[0] in ("--test-notify", "--test-notifications"):
            raise SystemExit(_notify_test_command())
        if argv[0] == "status":
            args = _build_status_parser().parse_args(argv[1:])
            raise SystemExit(_status_command(args.plan_file, as_json=bool(args.json)))
        if argv[0] == "notify":
            args = _build_notify_parser().parse_args(argv[1:])
            raise SystemExit(_notify_test_command(args.log_level))
        if argv[0] == "config":
            args = _build_config_parser().parse_args(argv[1:])
            raise SystemExit(_config_command(args.setting, args.value))

    args = _build_run_parser().parse_args(argv)
    raise SystemExit(_run_command(args))


if __name__ == "__main__":
    main()
