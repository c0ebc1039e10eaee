"""Build phase iteration with dual-signal stall detection.

One build iteration is one fresh agent session that picks a task from the
plan, implements it and updates its status. The loop ends when every task
scheduled up to the current pass is done, when neither the plan statuses
nor the source tree moved for ``stall_threshold`` consecutive iterations,
or when ``max_ralph_iterations`` is reached.
"""

from __future__ import annotations

import functools
from pathlib import Path
from typing import Callable

from lisa import terminal
from lisa.constants import BLOCK_ABORT, BLOCK_FIX, PHASE_BUILD, PLAN_RELATIVE_PATH
from lisa.enforcement import verify_tests_unmodified
from lisa.models import AgentResult, BuildPhase, InPass, LisaConfig, SpiralState
from lisa.review import ReviewGates
from lisa.state import save_state
from lisa.tasks import (
    all_tasks_done,
    count_blocked_tasks,
    count_tasks_by_status,
    count_uncompleted_tasks,
    has_blocked_tasks,
    task_status_fingerprint,
)
from lisa.utils import _append_log
from lisa.vcs import GitRepository

# (phase, pass_number, label, extra_context) -> AgentResult
PhaseAgent = Callable[[str, int, str, str], AgentResult]


class BuildLoop:
    def __init__(
        self,
        *,
        config: LisaConfig,
        lisa_root: Path,
        vcs: GitRepository,
        gates: ReviewGates,
        run_phase_agent: PhaseAgent,
        checkpoint: Callable[[SpiralState], None] | None = None,
    ) -> None:
        self.config = config
        self.lisa_root = lisa_root
        self.vcs = vcs
        self.gates = gates
        self.run_phase_agent = run_phase_agent
        self.checkpoint = checkpoint or functools.partial(save_state, lisa_root)
        self.plan_path = lisa_root / PLAN_RELATIVE_PATH

    def _source_changed(self, committed: bool, previous_snapshot: dict[str, str]) -> tuple[bool, dict[str, str]]:
        source_dirs = self.config.paths.source
        snapshot = self.vcs.source_snapshot(source_dirs)
        if self.vcs.auto_commit:
            changed = committed and self.vcs.source_changed_in_last_commit(source_dirs)
        else:
            changed = snapshot != previous_snapshot
        return changed, snapshot

    def _print_progress(self, pass_number: int) -> None:
        counts = count_tasks_by_status(self.plan_path)
        if counts.total == 0:
            return
        remaining = count_uncompleted_tasks(self.plan_path, pass_number)
        blocked = count_blocked_tasks(self.plan_path, pass_number)
        terminal.log_info(
            f"Progress: {counts.done} done / {remaining} remaining / {blocked} blocked "
            f"(of {counts.total})"
        )

    def _block_gate(self, pass_number: int, iteration: int) -> str:
        decision = self.gates.block_review(pass_number, self.plan_path)
        _append_log(self.lisa_root, f"block gate pass={pass_number} iteration={iteration}: {decision}")
        return decision

    def run(self, pass_number: int, start_iteration: int = 1) -> bool:
        """Iterate the build agent; ``False`` means the human aborted the pass."""
        limits = self.config.limits
        terminal.log_phase(f"PASS {pass_number} - BUILD (starting at iteration {start_iteration})")
        _append_log(self.lisa_root, f"build start pass={pass_number} iteration={start_iteration}")

        previous_fingerprint = task_status_fingerprint(self.plan_path)
        previous_snapshot = self.vcs.source_snapshot(self.config.paths.source)
        stall_count = 0

        for iteration in range(start_iteration, limits.max_ralph_iterations + 1):
            self._print_progress(pass_number)
            self.checkpoint(InPass(pass_number, BuildPhase(iteration)))
            self.run_phase_agent(
                PHASE_BUILD,
                pass_number,
                f"Build: iter {iteration}",
                f"Current spiral pass: {pass_number}",
            )
            verify_tests_unmodified(self.vcs, self.config.paths.tests_ddv)
            committed = self.vcs.commit_all(f"build: pass {pass_number} iteration {iteration}")

            if all_tasks_done(self.plan_path, pass_number):
                if has_blocked_tasks(self.plan_path, pass_number):
                    terminal.log_warn("All remaining tasks are BLOCKED.")
                    decision = self._block_gate(pass_number, iteration)
                    if decision == BLOCK_FIX:
                        stall_count = 0
                        previous_fingerprint = task_status_fingerprint(self.plan_path)
                        continue
                    if decision == BLOCK_ABORT:
                        return False
                terminal.log_success(f"All tasks for pass {pass_number} complete after iteration {iteration}.")
                break

            fingerprint = task_status_fingerprint(self.plan_path)
            tasks_changed = fingerprint != previous_fingerprint
            code_changed, previous_snapshot = self._source_changed(committed, previous_snapshot)
            previous_fingerprint = fingerprint

            if tasks_changed or code_changed:
                stall_count = 0
            else:
                stall_count += 1
            terminal.log_info(
                f"Signals: tasks_changed={tasks_changed} code_changed={code_changed} "
                f"stall={stall_count}/{limits.stall_threshold}"
            )
            if stall_count == 0:
                continue

            terminal.log_warn(
                f"No progress detected ({stall_count}/{limits.stall_threshold} consecutive iterations)."
            )
            if stall_count < limits.stall_threshold:
                continue

            _append_log(self.lisa_root, f"build stalled pass={pass_number} iteration={iteration}")
            if has_blocked_tasks(self.plan_path, pass_number):
                decision = self._block_gate(pass_number, iteration)
                if decision == BLOCK_FIX:
                    stall_count = 0
                    previous_fingerprint = task_status_fingerprint(self.plan_path)
                    continue
                if decision == BLOCK_ABORT:
                    return False
            else:
                terminal.log_warn("No blocked tasks found - nothing left to do.")
            break
        else:
            terminal.log_warn(
                f"Reached max build iterations ({limits.max_ralph_iterations}) for pass {pass_number}."
            )

        _append_log(self.lisa_root, f"build finished pass={pass_number}")
        return True
