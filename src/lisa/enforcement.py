"""Post-hoc isolation checks on agent behaviour.

These are drift detectors for the common case where an agent wanders off its
instructions, not a security boundary: the agent runs with full filesystem
access. What gets caught:

- the DDV Red agent reading or writing source files through Read/Write/Edit
- the DDV Red agent naming a source directory in a Bash command
- the build agent modifying or adding files under the DDV test directory

Indirect access such as ``cd src && cat main.py`` or reads delegated to a
sub-agent is not caught.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from lisa import terminal
from lisa.models import TOOL_BASH, IsolationViolationError, PATH_TOOLS, ToolCall
from lisa.vcs import GitRepository


def _is_under_source(path: str, source_dirs: Iterable[str], project_root: Path) -> bool:
    for source in source_dirs:
        absolute = str(project_root / source)
        if (
            path == source
            or path.startswith(f"{source}/")
            or path.startswith(f"./{source}/")
            or path.startswith(f"{absolute}/")
        ):
            return True
    return False


def _command_references_source(command: str, source_dirs: Iterable[str]) -> bool:
    return any(
        f" {source}/" in command or f" ./{source}/" in command for source in source_dirs
    )


def find_isolation_violations(
    tool_log: Iterable[ToolCall], source_dirs: Iterable[str], project_root: Path
) -> list[ToolCall]:
    dirs = tuple(source_dirs)
    violations: list[ToolCall] = []
    for call in tool_log:
        if call.kind in PATH_TOOLS and _is_under_source(call.value, dirs, project_root):
            violations.append(call)
        elif call.kind == TOOL_BASH and _command_references_source(call.value, dirs):
            violations.append(call)
    return violations


def verify_isolation(
    tool_log: Iterable[ToolCall], source_dirs: Iterable[str], project_root: Path
) -> None:
    violations = find_isolation_violations(tool_log, source_dirs, project_root)
    if not violations:
        return
    for call in violations:
        terminal.log_error(f"DDV isolation violation: {call}")
    raise IsolationViolationError(
        f"{len(violations)} source access violation(s) detected during the DDV Red phase: "
        + "; ".join(str(call) for call in violations)
        + ". The DDV agent must not read or write implementation source code."
    )


def verify_tests_unmodified(vcs: GitRepository, test_dir: str) -> list[str]:
    """Revert tracked changes and delete new files under ``test_dir``.

    Returns the affected repository-relative paths.
    """
    touched: list[str] = []
    if vcs.path_modified(test_dir):
        modified = vcs.modified_files(test_dir)
        terminal.log_warn(f"Build agent modified DDV tests ({len(modified)} file(s)); reverting.")
        vcs.revert_path(test_dir)
        touched.extend(modified)

    untracked = vcs.untracked_files(test_dir)
    if untracked:
        terminal.log_warn(f"Build agent added {len(untracked)} new file(s) in {test_dir}; removing.")
    for relative in untracked:
        try:
            (vcs.root / relative).unlink()
        except OSError as exc:
            terminal.log_warn(f"Failed to remove {relative}: {exc}")
            continue
        touched.append(relative)
    return touched
