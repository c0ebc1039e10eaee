"""Plan-document adapter.

Tasks live in ``methodology/plan.md`` as headings such as ``### Task 3: ...``
followed by ``**Status:** TODO`` and ``**Pass:** 2`` metadata lines. Nothing
here caches: every query re-reads the file so edits made by the agent or a
human between calls are always seen.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path

from lisa.constants import (
    DEFAULT_TASK_PASS,
    TASK_HEADING_PATTERN,
    TASK_OPEN_STATUSES,
    TASK_PASS_PATTERN,
    TASK_STATUS_BLOCKED,
    TASK_STATUS_DONE,
    TASK_STATUS_IN_PROGRESS,
    TASK_STATUS_PATTERN,
    TASK_STATUS_TODO,
)
from lisa.utils import _safe_read_text


@dataclass(frozen=True)
class Task:
    index: int
    pass_number: int
    status: str
    title: str


@dataclass(frozen=True)
class TaskCounts:
    total: int = 0
    todo: int = 0
    in_progress: int = 0
    done: int = 0
    blocked: int = 0

    @property
    def remaining(self) -> int:
        return self.total - self.done - self.blocked


def parse_tasks(content: str) -> list[Task]:
    tasks: list[Task] = []
    title: str | None = None
    status = ""
    pass_number: int | None = None

    def _flush() -> None:
        if title is None:
            return
        tasks.append(
            Task(
                index=len(tasks),
                pass_number=pass_number if pass_number is not None else DEFAULT_TASK_PASS,
                status=status,
                title=title,
            )
        )

    for line in content.splitlines():
        if TASK_HEADING_PATTERN.match(line):
            _flush()
            title = line.lstrip("#").strip()
            status = ""
            pass_number = None
            continue
        if title is None:
            continue
        status_match = TASK_STATUS_PATTERN.search(line)
        if status_match:
            status = status_match.group(1).upper()
        pass_match = TASK_PASS_PATTERN.search(line)
        if pass_match:
            pass_number = int(pass_match.group(1))
    _flush()
    return tasks


def load_tasks(plan_path: Path) -> list[Task]:
    if not plan_path.exists():
        return []
    return parse_tasks(_safe_read_text(plan_path))


def count_uncompleted_tasks(plan_path: Path, max_pass: int) -> int:
    return sum(
        1
        for task in load_tasks(plan_path)
        if task.pass_number <= max_pass and task.status in TASK_OPEN_STATUSES
    )


def count_blocked_tasks(plan_path: Path, max_pass: int) -> int:
    return sum(
        1
        for task in load_tasks(plan_path)
        if task.pass_number <= max_pass and task.status == TASK_STATUS_BLOCKED
    )


def all_tasks_done(plan_path: Path, max_pass: int) -> bool:
    """True when no TODO/IN_PROGRESS task is scheduled at or before ``max_pass``.

    BLOCKED tasks do not count as open; callers check them separately.
    """
    return count_uncompleted_tasks(plan_path, max_pass) == 0


def has_blocked_tasks(plan_path: Path, max_pass: int) -> bool:
    return count_blocked_tasks(plan_path, max_pass) > 0


def count_tasks_by_status(plan_path: Path) -> TaskCounts:
    tasks = load_tasks(plan_path)
    return TaskCounts(
        total=len(tasks),
        todo=sum(1 for task in tasks if task.status == TASK_STATUS_TODO),
        in_progress=sum(1 for task in tasks if task.status == TASK_STATUS_IN_PROGRESS),
        done=sum(1 for task in tasks if task.status == TASK_STATUS_DONE),
        blocked=sum(1 for task in tasks if task.status == TASK_STATUS_BLOCKED),
    )


def blocked_task_titles(plan_path: Path, max_pass: int | None = None) -> list[str]:
    return [
        task.title
        for task in load_tasks(plan_path)
        if task.status == TASK_STATUS_BLOCKED and (max_pass is None or task.pass_number <= max_pass)
    ]


def status_fingerprint(content: str) -> str:
    # Only (index, status) pairs: rewording a task is not progress.
    pairs = [[task.index, task.status] for task in parse_tasks(content)]
    encoded = json.dumps(pairs, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def task_status_fingerprint(plan_path: Path) -> str:
    content = _safe_read_text(plan_path) if plan_path.exists() else ""
    return status_fingerprint(content)
