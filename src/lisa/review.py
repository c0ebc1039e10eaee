"""Human review gates.

Each gate renders a short summary from the Markdown artifacts the agents
write, then asks for a decision through an injected ``prompt_choice``
callable. With pausing disabled every gate returns its safe default without
prompting so fully autonomous runs are possible. The extraction helpers are
cosmetic: missing files or sections drop a summary line, never raise.
"""

from __future__ import annotations

import os
import shlex
import subprocess
from pathlib import Path
from typing import Callable, Sequence

from lisa import terminal
from lisa.constants import (
    BLOCK_ABORT,
    BLOCK_FIX,
    BLOCK_SKIP,
    ENVIRONMENT_FIX,
    ENVIRONMENT_PROCEED,
    ENVIRONMENT_RESOLUTION_FILENAME,
    ENVIRONMENT_SKIP,
    HUMAN_REDIRECT_FILENAME,
    HUMAN_REDIRECT_TEMPLATE,
    PLAN_RELATIVE_PATH,
    REVIEW_ACCEPT,
    REVIEW_CONTINUE,
    REVIEW_PACKAGE_FILENAME,
    REVIEW_REDIRECT,
    SCOPE_APPROVE,
    SCOPE_EDIT,
    SCOPE_QUIT,
    SCOPE_REFINE,
    SPIRAL_DIRNAME,
)
from lisa.tasks import blocked_task_titles, count_tasks_by_status
from lisa.utils import _safe_read_text

Choice = tuple[str, str]
PromptChoice = Callable[..., str]

SCOPE_CHOICES: tuple[Choice, ...] = (
    ("A", "APPROVE  - proceed to Pass 1"),
    ("R", "REFINE   - provide feedback, re-run scope agent"),
    ("E", "EDIT     - edit the files directly, then approve"),
    ("Q", "QUIT     - stop here"),
)
PASS_CHOICES: tuple[Choice, ...] = (
    ("A", "ACCEPT   - produce final report"),
    ("C", "CONTINUE - next spiral pass"),
    ("R", "REDIRECT - provide guidance (opens $EDITOR)"),
)
BLOCK_CHOICES: tuple[Choice, ...] = (
    ("F", "FIX   - resolve blocks, then resume build"),
    ("S", "SKIP  - continue to next phase"),
    ("X", "ABORT - stop this spiral pass"),
)
ENVIRONMENT_CHOICES: tuple[Choice, ...] = (
    ("F", "FIX  - install the missing runtimes/tooling, then press Enter"),
    ("S", "SKIP - proceed anyway and accept the risk of build failures"),
)

_SCOPE_DECISIONS = {"A": SCOPE_APPROVE, "R": SCOPE_REFINE, "E": SCOPE_EDIT, "Q": SCOPE_QUIT}
_PASS_DECISIONS = {"A": REVIEW_ACCEPT, "C": REVIEW_CONTINUE, "R": REVIEW_REDIRECT}
_BLOCK_DECISIONS = {"F": BLOCK_FIX, "S": BLOCK_SKIP, "X": BLOCK_ABORT}
_ENVIRONMENT_DECISIONS = {"F": ENVIRONMENT_FIX, "S": ENVIRONMENT_SKIP}


# ---------------------------------------------------------------------------
# Markdown extraction
# ---------------------------------------------------------------------------


def extract_section_first_line(content: str, heading: str) -> str | None:
    found = False
    for line in content.splitlines():
        if line.startswith(heading):
            found = True
            continue
        if found and line.strip():
            return line.strip()
    return None


def _first_section_line(content: str, headings: Sequence[str]) -> str | None:
    for heading in headings:
        line = extract_section_first_line(content, heading)
        if line is not None:
            return line
    return None


def extract_primary_question(content: str) -> str | None:
    return _first_section_line(content, ("## Primary Question", "## Problem Statement", "## Question"))


def extract_methodology_approach(content: str) -> str | None:
    return _first_section_line(
        content, ("## Recommended Approach", "## Selected Approach", "## Approach")
    )


def extract_acceptance_lines(content: str, limit: int) -> list[str]:
    for heading in ("## Success Criteria", "## Acceptance Criteria", "## Criteria"):
        found = False
        lines: list[str] = []
        for line in content.splitlines():
            if line.startswith(heading):
                found = True
                continue
            if not found:
                continue
            if line.startswith("## "):
                break
            if line.strip():
                lines.append(line.strip())
                if len(lines) >= limit:
                    break
        if lines:
            return lines
    return []


def count_verification_cases(content: str) -> int:
    count = 0
    for line in content.splitlines():
        trimmed = line.lstrip("#").strip()
        if trimmed.startswith("V0-") or trimmed.startswith("V1-"):
            count += 1
    return count


def extract_stack_info(content: str) -> str | None:
    found = False
    for line in content.splitlines():
        if "Language & Runtime" in line:
            found = True
            continue
        if found and line.strip() and not line.startswith("#"):
            text = line.strip()
            return None if "To be resolved" in text else text
    return None


def extract_sanity_line(content: str) -> str | None:
    for line in content.splitlines():
        if "sanity checks:" in line.lower() and not line.startswith("#"):
            return line.rsplit(":", 1)[-1].strip()
    return None


def has_guidance(content: str) -> bool:
    """True when a redirect file holds something besides headings and comments."""
    return bool(redirect_guidance(content))


def redirect_guidance(content: str) -> str:
    kept: list[str] = []
    in_comment = False
    for line in content.splitlines():
        stripped = line.strip()
        if in_comment:
            if "-->" in stripped:
                in_comment = False
            continue
        if "<!--" in stripped:
            in_comment = "-->" not in stripped
            continue
        if not stripped or stripped.startswith("#") or stripped.startswith("-->"):
            continue
        kept.append(line.rstrip())
    return "\n".join(kept)


def scope_feedback_has_content(content: str) -> bool:
    return any(
        line.strip() and not line.startswith("#") and line.strip() != "-"
        for line in content.splitlines()
    )


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def _read_if_exists(path: Path) -> str | None:
    if not path.exists():
        return None
    return _safe_read_text(path)


def scope_summary_lines(lisa_root: Path) -> list[str]:
    pass0 = lisa_root / SPIRAL_DIRNAME / "pass-0"
    acceptance = _read_if_exists(pass0 / "acceptance-criteria.md")
    methodology = _read_if_exists(lisa_root / "methodology" / "methodology.md")
    agents = _read_if_exists(lisa_root / "AGENTS.md")
    validation = _read_if_exists(pass0 / "validation-strategy.md")
    spiral_plan = _read_if_exists(pass0 / "spiral-plan.md")

    lines: list[str] = []
    question = extract_primary_question(acceptance) if acceptance else None
    if question:
        lines.append(f"Question: {question}")
    approach = extract_methodology_approach(methodology) if methodology else None
    if approach:
        lines.append(f"Approach: {approach}")
    stack = extract_stack_info(agents) if agents else None
    if stack:
        lines.append(f"Stack:    {stack}")
    counts = count_tasks_by_status(lisa_root / PLAN_RELATIVE_PATH)
    if counts.total:
        lines.append(f"Tasks:    {counts.total} total ({counts.todo} TODO, {counts.blocked} BLOCKED)")
    ddv_cases = count_verification_cases(validation) if validation else 0
    if ddv_cases:
        lines.append(f"DDV cases: {ddv_cases}")

    criteria = extract_acceptance_lines(acceptance, 5) if acceptance else []
    if criteria:
        lines.extend(["", "Acceptance criteria:"])
        lines.extend(f"  {line}" for line in criteria)

    if spiral_plan:
        rows = [
            line
            for line in spiral_plan.splitlines()
            if line.startswith("| ") and ("Pass" in line or line[2:3].isdigit())
        ][:5]
        if rows:
            lines.extend(["", "Scope progression:"])
            lines.extend(f"  {row}" for row in rows)

    if methodology:
        sections = [
            line
            for line in methodology.splitlines()
            if line.startswith("## ") and "Phenomenon" not in line
        ][:8]
        if sections:
            lines.extend(["", "Methodology sections:"])
            lines.extend(f"  {section}" for section in sections)

    lines.extend(
        [
            "",
            "Files: methodology.md, plan.md, acceptance-criteria.md, spiral-plan.md, validation-strategy.md",
        ]
    )
    return lines


def review_summary_lines(content: str) -> list[str]:
    lines: list[str] = []
    answer = extract_section_first_line(content, "## Current Answer")
    if answer:
        lines.append(f"Answer:   {answer}")
    progress = extract_section_first_line(content, "## Progress")
    if progress:
        lines.append(f"Progress: {progress}")
    for line in content.splitlines():
        if line.startswith("DDV:"):
            lines.append(f"Tests:    {line.strip()}")
            break
    sanity = extract_sanity_line(content)
    if sanity:
        lines.append(f"Sanity:   {sanity}")
    recommendation = extract_section_first_line(content, "## Recommendation")
    if recommendation:
        lines.extend(["", f"Agent recommends: {recommendation}"])
    return lines


def block_summary_lines(plan_path: Path, pass_number: int) -> list[str]:
    counts = count_tasks_by_status(plan_path)
    lines = [
        f"Completed: {counts.done} / {counts.total} tasks",
        f"Blocked:   {counts.blocked} tasks",
    ]
    titles = blocked_task_titles(plan_path, pass_number)
    if titles:
        lines.extend(["", "Blocked tasks:"])
        lines.extend(f"  * {title}" for title in titles)
    return lines


# ---------------------------------------------------------------------------
# Interactive capabilities
# ---------------------------------------------------------------------------


def stdin_prompt_choice(choices: Sequence[Choice], *, prompt: str = "Your choice") -> str:
    keys = [key.upper() for key, _description in choices]
    for key, description in choices:
        print(f"  [{key}] {description}")
    print()
    while True:
        raw = input(f"  {prompt} [{'/'.join(keys)}]: ")
        choice = raw.strip().upper()
        if choice in keys:
            return choice
        print(f"  Please enter one of {', '.join(keys)}.")


def resolve_editor() -> list[str]:
    raw = os.environ.get("EDITOR") or os.environ.get("VISUAL") or "vi"
    try:
        argv = shlex.split(raw)
    except ValueError:
        argv = [raw]
    return argv or ["vi"]


def launch_editor(path: Path) -> None:
    argv = [*resolve_editor(), str(path)]
    try:
        subprocess.run(argv, check=False)
    except OSError as exc:
        terminal.log_warn(f"Could not launch editor '{argv[0]}': {exc}. Edit {path} manually.")


def wait_for_enter(message: str) -> None:
    input(f"  {message} ")


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------


class ReviewGates:
    def __init__(
        self,
        lisa_root: Path,
        *,
        pause: bool,
        prompt_choice: PromptChoice | None = None,
        open_editor: Callable[[Path], None] | None = None,
        wait: Callable[[str], None] | None = None,
    ) -> None:
        self.lisa_root = lisa_root
        self.pause = pause
        self.prompt_choice = prompt_choice or stdin_prompt_choice
        self.open_editor = open_editor or launch_editor
        self.wait = wait or wait_for_enter

    def _render(self, title: str, lines: list[str]) -> None:
        print()
        terminal.print_separator()
        print(f"  {title}")
        terminal.print_separator()
        print()
        terminal.print_block(lines)
        print()

    def scope_review(self) -> str:
        if not self.pause:
            terminal.log_warn("Scope review skipped (pause = false)")
            return SCOPE_APPROVE
        self._render("PASS 0 (SCOPING) COMPLETE - REVIEW REQUIRED", scope_summary_lines(self.lisa_root))
        return _SCOPE_DECISIONS[self.prompt_choice(SCOPE_CHOICES, prompt="Choice")]

    def pass_review(self, pass_number: int) -> str:
        if not self.pause:
            terminal.log_warn("Review gate skipped (pause = false); defaulting to CONTINUE")
            return REVIEW_CONTINUE

        pass_dir = self.lisa_root / SPIRAL_DIRNAME / f"pass-{pass_number}"
        review_path = pass_dir / REVIEW_PACKAGE_FILENAME
        content = _read_if_exists(review_path)
        lines = review_summary_lines(content) if content else [f"Review package not found at {review_path}"]
        lines.extend(
            [
                "",
                "Files:",
                f"  Review:     {review_path}",
                f"  Execution:  {pass_dir / 'execution-report.md'}",
                f"  Plots:      {self.lisa_root / 'plots' / 'REVIEW.md'}",
            ]
        )
        self._render(f"SPIRAL PASS {pass_number} COMPLETE - REVIEW REQUIRED", lines)

        decision = _PASS_DECISIONS[self.prompt_choice(PASS_CHOICES, prompt="Your choice")]
        if decision == REVIEW_ACCEPT:
            terminal.log_success("ACCEPTED - producing final output.")
            return REVIEW_ACCEPT
        if decision == REVIEW_CONTINUE:
            terminal.log_info("CONTINUE - proceeding to next pass.")
            return REVIEW_CONTINUE
        return self._collect_redirect(pass_dir / HUMAN_REDIRECT_FILENAME, pass_number)

    def _collect_redirect(self, redirect_file: Path, pass_number: int) -> str:
        redirect_file.parent.mkdir(parents=True, exist_ok=True)
        redirect_file.write_text(HUMAN_REDIRECT_TEMPLATE.format(pass_number=pass_number), encoding="utf-8")
        self.open_editor(redirect_file)
        content = _read_if_exists(redirect_file) or ""
        if has_guidance(content):
            terminal.log_info(f"REDIRECT - guidance saved to {redirect_file}")
            return REVIEW_REDIRECT
        # Leave no stale template behind for the next pass's preamble.
        redirect_file.unlink(missing_ok=True)
        terminal.log_warn("Redirect file contains only template text. Treating as CONTINUE.")
        return REVIEW_CONTINUE

    def block_review(self, pass_number: int, plan_path: Path) -> str:
        if not self.pause:
            terminal.log_warn("Block gate skipped (pause = false); defaulting to SKIP")
            return BLOCK_SKIP
        self._render("BUILD BLOCKED", block_summary_lines(plan_path, pass_number))
        decision = _BLOCK_DECISIONS[self.prompt_choice(BLOCK_CHOICES, prompt="Your choice")]
        if decision == BLOCK_FIX:
            terminal.log_info(f"FIX - resolve blocks in {plan_path}, then build resumes.")
        elif decision == BLOCK_SKIP:
            terminal.log_info("SKIP - continuing to next phase.")
        else:
            terminal.log_error("ABORT - stopping spiral pass.")
        return decision

    def environment_review(self) -> str:
        env_file = self.lisa_root / SPIRAL_DIRNAME / "pass-0" / ENVIRONMENT_RESOLUTION_FILENAME
        content = _read_if_exists(env_file)
        if not content or not content.strip():
            return ENVIRONMENT_PROCEED
        if not self.pause:
            terminal.log_warn(
                "Environment gate skipped (pause = false); proceeding with possible missing tooling"
            )
            return ENVIRONMENT_PROCEED
        lines = [
            "The scope agent detected missing runtimes or toolchains.",
            f"Details: {env_file}",
            "",
            *content.rstrip().splitlines(),
        ]
        self._render("ENVIRONMENT RESOLUTION REQUIRED", lines)
        decision = _ENVIRONMENT_DECISIONS[self.prompt_choice(ENVIRONMENT_CHOICES, prompt="Your choice")]
        if decision == ENVIRONMENT_FIX:
            self.wait("Press ENTER when you've installed the missing tooling...")
        else:
            terminal.log_warn("SKIP - proceeding with possible missing tooling.")
        return decision
