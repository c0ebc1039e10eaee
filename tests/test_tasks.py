from __future__ import annotations

from pathlib import Path

from conftest import plan_text

from lisa.tasks import (
    all_tasks_done,
    blocked_task_titles,
    count_blocked_tasks,
    count_tasks_by_status,
    count_uncompleted_tasks,
    has_blocked_tasks,
    parse_tasks,
    status_fingerprint,
    task_status_fingerprint,
)


def _write_plan(tmp_path: Path, content: str) -> Path:
    plan = tmp_path / "plan.md"
    plan.write_text(content, encoding="utf-8")
    return plan


def test_parse_tasks_reads_heading_status_and_pass() -> None:
    content = """# Plan

### Overview
**Status:** TODO

## Task 1: Set up the solver
**Status:** done
**Pass:** 1

#### Task 2 - Validate against reference
Some description.
**Status:** IN_PROGRESS
"""
    tasks = parse_tasks(content)
    assert [(task.index, task.status, task.pass_number) for task in tasks] == [
        (0, "DONE", 1),
        (1, "IN_PROGRESS", 1),
    ]
    assert tasks[0].title == "Task 1: Set up the solver"


def test_done_and_blocked_are_scoped_by_pass(tmp_path: Path) -> None:
    plan = _write_plan(tmp_path, plan_text(("DONE", 1), ("BLOCKED", 2)))
    assert all_tasks_done(plan, 1)
    assert not has_blocked_tasks(plan, 1)
    assert has_blocked_tasks(plan, 2)
    assert all_tasks_done(plan, 2)


def test_open_tasks_in_later_passes_are_ignored(tmp_path: Path) -> None:
    plan = _write_plan(tmp_path, plan_text(("DONE", 1), ("TODO", 2), ("IN_PROGRESS", 3)))
    assert count_uncompleted_tasks(plan, 1) == 0
    assert count_uncompleted_tasks(plan, 2) == 1
    assert count_uncompleted_tasks(plan, 3) == 2
    assert count_blocked_tasks(plan, 3) == 0


def test_missing_plan_has_no_tasks(tmp_path: Path) -> None:
    plan = tmp_path / "missing.md"
    assert all_tasks_done(plan, 1)
    assert count_tasks_by_status(plan).total == 0
    assert task_status_fingerprint(plan) == status_fingerprint("")


def test_counts_by_status(tmp_path: Path) -> None:
    plan = _write_plan(tmp_path, plan_text(("TODO", 1), ("DONE", 1), ("BLOCKED", 1), ("IN_PROGRESS", 2)))
    counts = count_tasks_by_status(plan)
    assert (counts.total, counts.todo, counts.done, counts.blocked, counts.in_progress) == (4, 1, 1, 1, 1)
    assert counts.remaining == 2
    assert blocked_task_titles(plan) == ["Task 3: item 3"]


def test_fingerprint_ignores_wording_but_not_status() -> None:
    original = plan_text(("TODO", 1), ("DONE", 1))
    reworded = original.replace("item 1", "a completely different title") + "\nTrailing notes.\n"
    changed = plan_text(("IN_PROGRESS", 1), ("DONE", 1))

    assert status_fingerprint(original) == status_fingerprint(reworded)
    assert status_fingerprint(original) != status_fingerprint(changed)


def test_fingerprint_changes_when_task_count_changes() -> None:
    assert status_fingerprint(plan_text()) != status_fingerprint(plan_text(("TODO", 1)))
    assert status_fingerprint(plan_text(("TODO", 1))) != status_fingerprint(
        plan_text(("TODO", 1), ("TODO", 1))
    )
