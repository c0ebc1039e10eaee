from __future__ import annotations

import argparse
import shutil
import subprocess
import sys
from pathlib import Path

from lisa import terminal
from lisa.config import default_config_yaml, lisa_root_path, load_config, with_overrides
from lisa.constants import (
    CONFIG_FILENAME,
    DEFAULT_LISA_ROOT,
    LOCK_STALE_SECONDS,
    PASS_COMPLETE_FILENAME,
    PLAN_RELATIVE_PATH,
    RUNTIME_IGNORE_ENTRIES,
    SPIRAL_COMPLETE_FILENAME,
    SPIRAL_DIRNAME,
)
from lisa.models import (
    AgentError,
    BudgetExceededError,
    ConfigError,
    GitError,
    IsolationViolationError,
    LisaConfig,
    LockError,
    NotStarted,
    RollbackError,
    StateError,
)
from lisa.orchestrator import SpiralController
from lisa.prompts import eject_prompts
from lisa.state import RunLock, load_state
from lisa.tasks import count_tasks_by_status
from lisa.usage import format_usage_summary, load_usage
from lisa.utils import _ensure_text_file
from lisa.vcs import GitRepository

# Failures a later `lisa resume` can pick up from.
RESUMABLE_ERRORS = (AgentError, GitError, BudgetExceededError, IsolationViolationError)
LISA_ERRORS = RESUMABLE_ERRORS + (ConfigError, StateError, RollbackError, LockError)


def _project_root(args: argparse.Namespace) -> Path:
    return Path(args.project_root).expanduser().resolve()


def _report_error(command: str, exc: Exception) -> int:
    print(f"lisa {command}: ERROR {exc}", file=sys.stderr)
    if isinstance(exc, RESUMABLE_ERRORS):
        print(f"lisa {command}: run `lisa resume` to continue from the last checkpoint.", file=sys.stderr)
    return 1


def _lisa_root_or_default(project_root: Path) -> Path:
    try:
        return lisa_root_path(load_config(project_root), project_root)
    except ConfigError:
        return project_root / DEFAULT_LISA_ROOT


def _run_controller(command: str, args: argparse.Namespace, config: LisaConfig, action) -> int:
    project_root = _project_root(args)
    controller = SpiralController(project_root, config)
    try:
        controller.ensure_runtime_ignore()
        with RunLock(controller.lisa_root, command=command, stale_seconds=LOCK_STALE_SECONDS) as lock:
            controller.on_checkpoint = lock.heartbeat
            action(controller)
    except LISA_ERRORS as exc:
        return _report_error(command, exc)
    except (KeyboardInterrupt, EOFError):
        print(f"\nlisa {command}: interrupted; run `lisa resume` to continue.", file=sys.stderr)
        return 130
    return 0


def _load_config_or_report(command: str, args: argparse.Namespace) -> LisaConfig | None:
    try:
        return load_config(_project_root(args))
    except ConfigError as exc:
        _report_error(command, exc)
        return None


def _cmd_init(args: argparse.Namespace) -> int:
    project_root = _project_root(args)
    config_path = project_root / CONFIG_FILENAME
    if config_path.exists():
        print(f"lisa init: {config_path} already exists; leaving it unchanged")
    else:
        name = args.name or project_root.name
        _ensure_text_file(config_path, default_config_yaml(name))
        print(f"lisa init: wrote {config_path}")
    try:
        config = load_config(project_root)
    except ConfigError as exc:
        return _report_error("init", exc)
    lisa_root = lisa_root_path(config, project_root)
    _ensure_text_file(lisa_root / ".gitignore", "\n".join(RUNTIME_IGNORE_ENTRIES) + "\n")
    print(f"lisa init: runtime directory {lisa_root}")
    if not (lisa_root / "BRIEF.md").exists():
        print(f"lisa init: next, describe the deliverables in {lisa_root / 'BRIEF.md'} and the task in ASSIGNMENT.md")
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_config_or_report("run", args)
    if config is None:
        return 1
    config = with_overrides(
        config,
        pause=False if args.no_pause else None,
        collapse_output=False if args.verbose else None,
        max_spiral_passes=args.max_passes,
    )
    return _run_controller("run", args, config, lambda controller: controller.run())


def _cmd_resume(args: argparse.Namespace) -> int:
    config = _load_config_or_report("resume", args)
    if config is None:
        return 1
    return _run_controller("resume", args, config, lambda controller: controller.resume())


def _cmd_scope(args: argparse.Namespace) -> int:
    config = _load_config_or_report("scope", args)
    if config is None:
        return 1
    return _run_controller("scope", args, config, lambda controller: controller.scope())


def _cmd_finalize(args: argparse.Namespace) -> int:
    config = _load_config_or_report("finalize", args)
    if config is None:
        return 1
    return _run_controller("finalize", args, config, lambda controller: controller.finalize_current())


def _cmd_rollback(args: argparse.Namespace) -> int:
    config = _load_config_or_report("rollback", args)
    if config is None:
        return 1
    if args.pass_number < 0:
        print("lisa rollback: ERROR pass number must be >= 0", file=sys.stderr)
        return 1
    return _run_controller(
        "rollback",
        args,
        config,
        lambda controller: controller.rollback(args.pass_number, force=args.force),
    )


def _cmd_status(args: argparse.Namespace) -> int:
    project_root = _project_root(args)
    lisa_root = _lisa_root_or_default(project_root)
    if not lisa_root.exists():
        print(f"lisa status: ERROR no {lisa_root.name}/ directory found in {project_root}", file=sys.stderr)
        return 1
    try:
        state = load_state(lisa_root)
    except StateError as exc:
        return _report_error("status", exc)

    print("lisa status")
    if isinstance(state, NotStarted):
        print("state: not started")
        print("next: lisa scope   (or lisa run)")
        return 0
    print(f"state: {state}")

    spiral_dir = lisa_root / SPIRAL_DIRNAME
    if (spiral_dir / SPIRAL_COMPLETE_FILENAME).exists():
        print("spiral: COMPLETE (answer accepted)")
    if spiral_dir.exists():
        pass_dirs = sorted(
            (path for path in spiral_dir.iterdir() if path.is_dir() and path.name.startswith("pass-")),
            key=lambda path: int(path.name.split("-", 1)[1]) if path.name.split("-", 1)[1].isdigit() else -1,
        )
        print("pass artifacts:")
        for path in pass_dirs:
            marker = " (complete)" if (path / PASS_COMPLETE_FILENAME).exists() else ""
            print(f"  {path.name}{marker}")

    counts = count_tasks_by_status(lisa_root / PLAN_RELATIVE_PATH)
    if counts.total:
        print(
            f"tasks: {counts.done} done, {counts.in_progress} in progress, "
            f"{counts.todo} todo, {counts.blocked} blocked (of {counts.total})"
        )
    try:
        ledger = load_usage(lisa_root)
    except StateError as exc:
        return _report_error("status", exc)
    if ledger.invocation_count():
        print(f"cost: ${ledger.total_cost():.4f} over {ledger.invocation_count()} invocations")
    return 0


def _doctor_line(ok: bool | None, message: str) -> None:
    mark = "ok" if ok else ("--" if ok is None else "FAIL")
    print(f"  [{mark:>4}] {message}")


def _agent_cli_available(command: str) -> bool:
    if shutil.which(command) is None:
        return False
    try:
        proc = subprocess.run([command, "--version"], capture_output=True, text=True, check=False, timeout=30)
    except (OSError, subprocess.SubprocessError):
        return False
    return proc.returncode == 0


def _cmd_doctor(args: argparse.Namespace) -> int:
    project_root = _project_root(args)
    print("lisa doctor")
    failures = 0

    git_ok = GitRepository(project_root).is_git_repo()
    _doctor_line(git_ok, "git repository detected" if git_ok else "not a git repository (run: git init)")
    failures += 0 if git_ok else 1

    config: LisaConfig | None = None
    try:
        config = load_config(project_root)
    except ConfigError as exc:
        _doctor_line(False, f"{CONFIG_FILENAME}: {exc}")
        failures += 1
    else:
        _doctor_line(True, f"{CONFIG_FILENAME} is valid")

    agent_command = config.agent.command if config is not None else "claude"
    agent_ok = _agent_cli_available(agent_command)
    _doctor_line(agent_ok, f"agent CLI '{agent_command}' found" if agent_ok else f"agent CLI '{agent_command}' not found on PATH")
    failures += 0 if agent_ok else 1

    lisa_root = lisa_root_path(config, project_root) if config is not None else project_root / DEFAULT_LISA_ROOT
    if lisa_root.exists():
        _doctor_line(True, f"{lisa_root} directory exists")
        brief_ok = (lisa_root / "BRIEF.md").exists()
        _doctor_line(brief_ok, "BRIEF.md exists" if brief_ok else "BRIEF.md missing")
        failures += 0 if brief_ok else 1
    else:
        _doctor_line(None, f"{lisa_root} not found (it is created on the first `lisa run`)")
    return 0 if failures == 0 else 1


def _cmd_eject_prompts(args: argparse.Namespace) -> int:
    project_root = _project_root(args)
    lisa_root = _lisa_root_or_default(project_root)
    if not lisa_root.exists():
        print(f"lisa eject-prompts: ERROR no {lisa_root.name}/ directory found in {project_root}", file=sys.stderr)
        return 1
    written, skipped = eject_prompts(lisa_root)
    for name in written:
        terminal.log_success(f"Written {name}")
    for name in skipped:
        terminal.log_warn(f"Skipping {name} (already exists)")
    terminal.log_info(f"Prompts ejected to {lisa_root / 'prompts'}; local copies take precedence.")
    return 0


def _cmd_usage(args: argparse.Namespace) -> int:
    lisa_root = _lisa_root_or_default(_project_root(args))
    try:
        ledger = load_usage(lisa_root)
    except StateError as exc:
        return _report_error("usage", exc)
    print("lisa usage")
    for line in format_usage_summary(ledger):
        print(line)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="lisa spiral development loop")
    parser.add_argument(
        "--project-root",
        default=".",
        help="Project root containing lisa.yaml (default: current directory)",
    )
    subparsers = parser.add_subparsers(dest="command")

    init = subparsers.add_parser("init", help="Write a default lisa.yaml and the .lisa runtime directory")
    init.add_argument("--name", default=None, help="Project name (default: directory name)")
    init.set_defaults(handler=_cmd_init)

    run = subparsers.add_parser("run", help="Run scoping (if needed) and spiral passes")
    run.add_argument("--max-passes", type=int, default=None, help="Override limits.max_spiral_passes")
    run.add_argument("--no-pause", action="store_true", help="Disable human review gates")
    run.add_argument("--verbose", action="store_true", help="Print every agent tool call")
    run.set_defaults(handler=_cmd_run)

    resume = subparsers.add_parser("resume", help="Continue from the last saved checkpoint")
    resume.set_defaults(handler=_cmd_resume)

    scope = subparsers.add_parser("scope", help="Run pass 0 scoping only")
    scope.set_defaults(handler=_cmd_scope)

    status = subparsers.add_parser("status", help="Show spiral state, pass artifacts, tasks and cost")
    status.set_defaults(handler=_cmd_status)

    finalize = subparsers.add_parser("finalize", help="Produce final deliverables from the latest pass")
    finalize.set_defaults(handler=_cmd_finalize)

    rollback = subparsers.add_parser("rollback", help="Reset the project to a completed pass tag")
    rollback.add_argument("pass_number", type=int, metavar="PASS", help="Pass number to roll back to")
    rollback.add_argument("--force", action="store_true", help="Skip the confirmation prompt")
    rollback.set_defaults(handler=_cmd_rollback)

    doctor = subparsers.add_parser("doctor", help="Check git, agent CLI and project configuration")
    doctor.set_defaults(handler=_cmd_doctor)

    eject = subparsers.add_parser("eject-prompts", help="Copy bundled prompts into .lisa/prompts for editing")
    eject.set_defaults(handler=_cmd_eject_prompts)

    usage = subparsers.add_parser("usage", help="Show token usage and cost")
    usage.set_defaults(handler=_cmd_usage)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))
