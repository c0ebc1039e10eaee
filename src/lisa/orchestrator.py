"""Spiral pass sequencing.

``SpiralController`` owns one project: it drives pass 0 scoping, runs each
spiral pass through Refine, DDV Red, Build, Execute and Validate, checkpoints
the :mod:`lisa.state` machine before every phase, and hands control to the
human at the review gates. Agent, git and prompt capabilities are injected so
the whole lifecycle can run against scripted fakes.
"""

from __future__ import annotations

import functools
from datetime import datetime
from pathlib import Path
from typing import Callable

from lisa import terminal
from lisa.build_loop import BuildLoop
from lisa.config import lisa_root_path, model_for_phase
from lisa.constants import (
    BACKUP_BRANCH_PREFIX,
    LAST_ERROR_FILENAME,
    PASS_COMPLETE_FILENAME,
    PASS_TAG_PREFIX,
    PHASE_DDV_RED,
    PHASE_EXECUTE,
    PHASE_FINALIZE,
    PHASE_REFINE,
    PHASE_SCOPE,
    PHASE_VALIDATE,
    REVIEW_ACCEPT,
    RUNTIME_IGNORE_ENTRIES,
    RUNTIME_STATE_PATHS,
    SCOPE_APPROVE,
    SCOPE_EDIT,
    SCOPE_FEEDBACK_FILENAME,
    SCOPE_FEEDBACK_TEMPLATE,
    SCOPE_QUIT,
    SCOPE_REFINEMENT_CONTEXT,
    SPIRAL_COMPLETE_FILENAME,
    SPIRAL_DIRNAME,
    USAGE_FILENAME,
)
from lisa.enforcement import verify_isolation
from lisa.models import (
    AgentResult,
    BuildPhase,
    Complete,
    DdvRedPhase,
    ExecutePhase,
    InPass,
    LisaConfig,
    NotStarted,
    PassPhase,
    PassReview,
    RefinePhase,
    RollbackError,
    ScopeComplete,
    ScopeReview,
    Scoping,
    SpiralState,
    StateError,
    ValidatePhase,
)
from lisa.prompts import build_agent_input, redirect_path
from lisa.review import ReviewGates, redirect_guidance, scope_feedback_has_content
from lisa.runners import AgentRunner, run_agent
from lisa.state import load_state, save_state, scope_is_complete
from lisa.usage import check_budget, record_invocation
from lisa.utils import _append_log, _atomic_write_text, _ensure_text_file, _local_now, _safe_read_text
from lisa.vcs import GitRepository

LAST_ERROR_PREVIEW_LINES = 15


def _stdin_confirm(question: str) -> bool:
    answer = input(f"  {question} [y/N] ")
    return answer.strip().lower() in {"y", "yes"}


def _pass_tag(pass_number: int) -> str:
    return f"{PASS_TAG_PREFIX}{pass_number}"


class SpiralController:
    def __init__(
        self,
        project_root: Path,
        config: LisaConfig,
        *,
        agent_runner: AgentRunner | None = None,
        vcs: GitRepository | None = None,
        gates: ReviewGates | None = None,
        confirm: Callable[[str], bool] | None = None,
        on_checkpoint: Callable[[], None] | None = None,
    ) -> None:
        self.project_root = project_root
        self.config = config
        self.lisa_root = lisa_root_path(config, project_root)
        self.agent_runner = agent_runner or functools.partial(
            run_agent, agent_config=config.agent, cwd=project_root
        )
        self.vcs = vcs or GitRepository(
            project_root,
            auto_commit=config.git.auto_commit,
            auto_push=config.git.auto_push,
            log_root=self.lisa_root,
        )
        self.gates = gates or ReviewGates(self.lisa_root, pause=config.review.pause)
        self.confirm = confirm or _stdin_confirm
        self.on_checkpoint = on_checkpoint
        self.build_loop = BuildLoop(
            config=config,
            lisa_root=self.lisa_root,
            vcs=self.vcs,
            gates=self.gates,
            run_phase_agent=self._run_agent_with_tracking,
            checkpoint=self._save_state,
        )

    # -- plumbing ----------------------------------------------------------

    def _pass_dir(self, pass_number: int) -> Path:
        return self.lisa_root / SPIRAL_DIRNAME / f"pass-{pass_number}"

    def ensure_runtime_ignore(self) -> None:
        self.lisa_root.mkdir(parents=True, exist_ok=True)
        _ensure_text_file(self.lisa_root / ".gitignore", "\n".join(RUNTIME_IGNORE_ENTRIES) + "\n")

    def _save_state(self, state: SpiralState) -> None:
        save_state(self.lisa_root, state)
        _append_log(self.lisa_root, f"state -> {state}")
        if self.on_checkpoint is not None:
            self.on_checkpoint()

    def _run_agent_with_tracking(
        self,
        phase: str,
        pass_number: int,
        label: str,
        extra_context: str | None = None,
    ) -> AgentResult:
        model = model_for_phase(self.config, phase)
        input_text = build_agent_input(phase, self.config, self.lisa_root, pass_number, extra_context)
        _append_log(self.lisa_root, f"agent start phase={phase} pass={pass_number} model={model}")
        result = self.agent_runner(
            input_text,
            model,
            label,
            collapse_output=self.config.terminal.collapse_output,
            error_log_path=self.lisa_root / LAST_ERROR_FILENAME,
        )
        cumulative = record_invocation(
            self.lisa_root, phase, pass_number, model, result.usage, result.elapsed_seconds
        )
        if result.usage.cost_usd > 0:
            terminal.log_info(f"Cost: ${result.usage.cost_usd:.4f} (cumulative: ${cumulative:.4f})")
        _append_log(
            self.lisa_root,
            f"agent exit phase={phase} pass={pass_number} tools={result.stats.tool_count} "
            f"cost={result.usage.cost_usd:.4f} elapsed={result.elapsed_seconds:.0f}s",
        )
        warning = check_budget(cumulative, self.config.limits.budget_usd, self.config.limits.budget_warn_pct)
        if warning:
            _append_log(self.lisa_root, warning)
        return result

    # -- entry points ------------------------------------------------------

    def run(self) -> None:
        """Scope if needed, then run passes up to ``limits.max_spiral_passes``."""
        self.ensure_runtime_ignore()
        if not self.config.review.pause:
            terminal.log_warn("Review gates disabled: the loop will not pause for human review.")
        terminal.log_phase(f"LISA LOOP - {self.config.project_name}")
        if not self.scope():
            return
        self.run_pass_range(1, self.config.limits.max_spiral_passes)

    def run_pass_range(self, start: int, end: int) -> None:
        for pass_number in range(start, end + 1):
            if (self._pass_dir(pass_number) / PASS_COMPLETE_FILENAME).exists():
                terminal.log_info(f"Pass {pass_number} already complete; skipping.")
                continue
            if not self._run_pass(pass_number, RefinePhase()):
                return
            if self._review_pass(pass_number):
                return
        terminal.log_warn(
            f"Reached max spiral passes ({end}) without acceptance. "
            f"Run `lisa run --max-passes {end + 1}` with a higher limit, "
            "or `lisa finalize` to produce output from the latest pass."
        )

    def scope(self) -> bool:
        """Run pass 0 until the human approves; ``False`` when they quit.

        A completed scope is never re-run, so the saved state and the ``pass-0``
        tag stay put once later passes have started.
        """
        marker = self._pass_dir(0) / PASS_COMPLETE_FILENAME
        if marker.exists() or scope_is_complete(load_state(self.lisa_root)):
            terminal.log_info("Pass 0 already complete; skipping scoping.")
            return True
        self.ensure_runtime_ignore()
        terminal.log_phase("PASS 0 - SCOPING")
        self._save_state(Scoping(1))
        pass0 = self._pass_dir(0)
        pass0.mkdir(parents=True, exist_ok=True)

        feedback_path = pass0 / SCOPE_FEEDBACK_FILENAME
        extra = None
        if feedback_path.exists() and scope_feedback_has_content(_safe_read_text(feedback_path)):
            terminal.log_info("Existing scope feedback found; running as a refinement.")
            extra = SCOPE_REFINEMENT_CONTEXT
        self._run_agent_with_tracking(PHASE_SCOPE, 0, "Scope", extra)
        self.vcs.commit_all("scope: pass 0 - scoping complete")
        self.gates.environment_review()
        self._save_state(ScopeReview())

        attempt = 1
        while True:
            decision = self.gates.scope_review()
            if decision == SCOPE_APPROVE:
                break
            if decision == SCOPE_QUIT:
                terminal.log_info("Stopping before scope approval. Run `lisa resume` to continue.")
                return False
            if decision == SCOPE_EDIT:
                self.gates.wait("Edit the scope artifacts, then press ENTER to approve...")
                self.vcs.commit_all("scope: edited by human")
                break
            attempt += 1
            self._save_state(Scoping(attempt))
            _ensure_text_file(feedback_path, SCOPE_FEEDBACK_TEMPLATE)
            self.gates.open_editor(feedback_path)
            self._run_agent_with_tracking(PHASE_SCOPE, 0, "Scope: refinement", SCOPE_REFINEMENT_CONTEXT)
            self.vcs.commit_all("scope: refined after human feedback")
            self._save_state(ScopeReview())

        self._save_state(ScopeComplete())
        self.vcs.create_tag(_pass_tag(0))
        terminal.log_success("Scope approved.")
        return True

    # -- pass phases -------------------------------------------------------

    def _run_pass(self, pass_number: int, entry: PassPhase) -> bool:
        """Run the pass from ``entry`` to the end; ``False`` if the build was aborted."""
        terminal.log_phase(f"SPIRAL PASS {pass_number}")
        if entry.order <= RefinePhase.order:
            self._refine(pass_number)
        if entry.order <= DdvRedPhase.order:
            self._ddv_red(pass_number)
        if entry.order <= BuildPhase.order:
            start_iteration = entry.iteration if isinstance(entry, BuildPhase) else 1
            if not self.build_loop.run(pass_number, start_iteration):
                terminal.log_warn(
                    f"Build aborted at pass {pass_number}. "
                    "Run `lisa resume` to retry from the build phase."
                )
                return False
        if entry.order <= ExecutePhase.order:
            self._execute(pass_number)
        self._validate(pass_number)

        self.vcs.push()
        self.vcs.create_tag(_pass_tag(pass_number))
        self._save_state(PassReview(pass_number))
        return True

    def _review_pass(self, pass_number: int) -> bool:
        """Run the pass gate; ``True`` when the answer was accepted and finalized."""
        decision = self.gates.pass_review(pass_number)
        _append_log(self.lisa_root, f"pass {pass_number} review: {decision}")
        if decision == REVIEW_ACCEPT:
            self.finalize(pass_number)
            return True
        return False

    def _refine_context(self, pass_number: int) -> str:
        lines = [
            f"Current spiral pass: {pass_number}",
            f"Previous pass results: {self.config.paths.lisa_root}/spiral/pass-{pass_number - 1}/",
        ]
        redirect_file = redirect_path(self.lisa_root, pass_number - 1)
        if redirect_file.exists():
            guidance = redirect_guidance(_safe_read_text(redirect_file))
            if guidance:
                lines.append(
                    f"HUMAN REDIRECT: read {self.config.paths.lisa_root}/spiral/pass-{pass_number - 1}/"
                    f"{redirect_file.name} and follow its guidance for this pass."
                )
                lines.extend(["", "Human guidance:", guidance])
        return "\n".join(lines)

    def _refine(self, pass_number: int) -> None:
        terminal.log_phase(f"PASS {pass_number} - REFINE")
        self._save_state(InPass(pass_number, RefinePhase()))
        self._pass_dir(pass_number).mkdir(parents=True, exist_ok=True)
        self._run_agent_with_tracking(
            PHASE_REFINE, pass_number, f"Refine: pass {pass_number}", self._refine_context(pass_number)
        )
        self.vcs.commit_all(f"refine: pass {pass_number}")

    def _ddv_red(self, pass_number: int) -> None:
        terminal.log_phase(f"PASS {pass_number} - DDV RED")
        self._save_state(InPass(pass_number, DdvRedPhase()))
        result = self._run_agent_with_tracking(
            PHASE_DDV_RED,
            pass_number,
            f"DDV Red: pass {pass_number}",
            f"Current spiral pass: {pass_number}",
        )
        verify_isolation(result.tool_log, self.config.paths.source, self.project_root)
        self.vcs.commit_all(f"ddv-red: pass {pass_number} - domain verification tests written")

    def _execute(self, pass_number: int) -> None:
        terminal.log_phase(f"PASS {pass_number} - EXECUTE")
        self._save_state(InPass(pass_number, ExecutePhase()))
        self._run_agent_with_tracking(
            PHASE_EXECUTE,
            pass_number,
            f"Execute: pass {pass_number}",
            f"Current spiral pass: {pass_number}",
        )
        self.vcs.commit_all(f"execute: pass {pass_number}")

    def _validate(self, pass_number: int) -> None:
        terminal.log_phase(f"PASS {pass_number} - VALIDATE")
        self._save_state(InPass(pass_number, ValidatePhase()))
        self._run_agent_with_tracking(
            PHASE_VALIDATE,
            pass_number,
            f"Validate: pass {pass_number}",
            f"Current spiral pass: {pass_number}",
        )
        self.vcs.commit_all(f"validate: pass {pass_number}")

    # -- finalize ----------------------------------------------------------

    def finalize(self, pass_number: int) -> None:
        root = self.config.paths.lisa_root
        terminal.log_phase("FINALIZING - Producing deliverables")
        extra = "\n".join(
            [
                f"Current spiral pass: {pass_number}",
                "FINALIZATION MODE: The human has ACCEPTED the results.",
                f"Read the review package at {root}/spiral/pass-{pass_number}/review-package.md for the current answer.",
                f"Read all {root}/spiral/pass-*/progress-tracking.md files for the progress history.",
                f"Read {root}/methodology/methodology.md for the methodology.",
                f"Produce the deliverables specified in {root}/BRIEF.md.",
            ]
        )
        (self.lisa_root / "output").mkdir(parents=True, exist_ok=True)
        self._run_agent_with_tracking(PHASE_FINALIZE, pass_number, "Finalize: output", extra)
        self.vcs.commit_all("final: generate output deliverables")

        complete_path = self.lisa_root / SPIRAL_DIRNAME / SPIRAL_COMPLETE_FILENAME
        _atomic_write_text(
            complete_path,
            "# Spiral Complete\n\n"
            "The human has accepted the results.\n\n"
            f"Completed: {_local_now()}\n"
            f"Final pass: {pass_number}\n",
        )
        self._save_state(Complete(pass_number))
        self.vcs.commit_all(f"final: spiral complete - answer accepted at pass {pass_number}")
        self.vcs.push()

        terminal.log_success(f"Spiral complete. Answer accepted at pass {pass_number}.")
        summary = self.lisa_root / "output" / "audit-summary.md"
        if summary.exists():
            terminal.log_info(f"Audit summary: {summary}")

    def finalize_current(self) -> None:
        """Finalize from whatever pass the persisted state last finished."""
        state = load_state(self.lisa_root)
        if isinstance(state, Complete):
            terminal.log_info(f"Spiral already complete (final pass {state.final_pass}).")
            return
        if isinstance(state, (PassReview, InPass)):
            self.finalize(state.pass_number)
            return
        raise StateError(f"no completed pass to finalize (state: {state})")

    # -- resume ------------------------------------------------------------

    def _show_last_error(self) -> None:
        error_path = self.lisa_root / LAST_ERROR_FILENAME
        if not error_path.exists():
            return
        terminal.log_warn(f"Previous run failed. Context from {error_path}:")
        lines = _safe_read_text(error_path).splitlines()[:LAST_ERROR_PREVIEW_LINES]
        terminal.print_block(lines, indent="    ")
        error_path.unlink(missing_ok=True)

    def resume(self) -> None:
        self.ensure_runtime_ignore()
        self._show_last_error()
        state = load_state(self.lisa_root)
        terminal.log_info(f"Resuming from: {state}")
        max_passes = self.config.limits.max_spiral_passes

        if isinstance(state, NotStarted):
            self.run()
        elif isinstance(state, (Scoping, ScopeReview)):
            if self.scope():
                self.run_pass_range(1, max_passes)
        elif isinstance(state, ScopeComplete):
            self.run_pass_range(1, max_passes)
        elif isinstance(state, InPass):
            if not self._run_pass(state.pass_number, state.phase):
                return
            if not self._review_pass(state.pass_number):
                self.run_pass_range(state.pass_number + 1, max_passes)
        elif isinstance(state, PassReview):
            if not self._review_pass(state.pass_number):
                self.run_pass_range(state.pass_number + 1, max_passes)
        elif isinstance(state, Complete):
            terminal.log_success(f"Spiral already complete (final pass {state.final_pass}).")

    # -- rollback ----------------------------------------------------------

    def rollback(self, target_pass: int, *, force: bool = False) -> str:
        """Reset the tree to ``pass-N`` keeping the usage ledger; returns the backup branch."""
        tag = _pass_tag(target_pass)
        if not self.vcs.tag_exists(tag):
            available = self.vcs.list_pass_tags()
            points = ", ".join(_pass_tag(number) for number in available) if available else "none"
            raise RollbackError(f"Tag '{tag}' not found. Available rollback points: {points}")

        root = self.config.paths.lisa_root.strip("/")
        ignored = tuple(f"{root}/{path}" for path in RUNTIME_STATE_PATHS)
        if self.vcs.has_uncommitted_changes(ignored):
            raise RollbackError("uncommitted changes present. Commit or stash them before rolling back.")

        if not force:
            terminal.log_warn(f"This will reset the working tree to {tag}. Later work stays on a backup branch.")
            if not self.confirm("Proceed?"):
                terminal.log_info("Rollback cancelled.")
                return ""

        backup = f"{BACKUP_BRANCH_PREFIX}{datetime.now().strftime('%Y%m%d-%H%M%S')}"
        self.vcs.create_branch(backup)
        terminal.log_info(f"Backup branch created: {backup}")
        self.vcs.reset_hard(tag)

        ledger = self.vcs.show_file_at_ref(backup, f"{root}/{USAGE_FILENAME}")
        if ledger is not None:
            _atomic_write_text(self.lisa_root / USAGE_FILENAME, ledger)

        target_state: SpiralState = ScopeComplete() if target_pass == 0 else PassReview(target_pass)
        self._save_state(target_state)
        self.vcs.commit_all("rollback: restore usage ledger")
        _append_log(self.lisa_root, f"rollback to {tag} (backup {backup})")
        terminal.log_success(f"Rolled back to {tag}. State: {target_state}")
        return backup
