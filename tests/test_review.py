from __future__ import annotations

from pathlib import Path

import pytest
from conftest import plan_text, scripted_choices

from lisa.review import (
    ReviewGates,
    count_verification_cases,
    extract_acceptance_lines,
    extract_primary_question,
    extract_sanity_line,
    extract_stack_info,
    has_guidance,
    redirect_guidance,
    resolve_editor,
    review_summary_lines,
    scope_feedback_has_content,
    scope_summary_lines,
)

REVIEW_PACKAGE = """# Review Package - Pass 2

## Current Answer
Peak temperature is 412 K at t = 3.1 s.

## Progress
3/5 acceptance criteria met.

DDV: 14/15 passing
Software: 40/40 passing

### Sanity checks: 6/6 passing
All sanity checks: 6/6 passing

## Recommendation
CONTINUE - refine the mesh near the boundary.
"""


def _gates(tmp_path: Path, *answers: str, pause: bool = True, edits: str | None = None) -> ReviewGates:
    def _editor(path: Path) -> None:
        if edits is not None:
            path.write_text(path.read_text(encoding="utf-8") + edits, encoding="utf-8")

    return ReviewGates(
        tmp_path,
        pause=pause,
        prompt_choice=scripted_choices(*answers),
        open_editor=_editor,
        wait=lambda _message: None,
    )


# ---------------------------------------------------------------------------
# Extraction helpers
# ---------------------------------------------------------------------------


def test_review_summary_extracts_known_sections() -> None:
    lines = review_summary_lines(REVIEW_PACKAGE)
    assert "Answer:   Peak temperature is 412 K at t = 3.1 s." in lines
    assert "Progress: 3/5 acceptance criteria met." in lines
    assert "Tests:    DDV: 14/15 passing" in lines
    assert "Sanity:   6/6 passing" in lines
    assert "Agent recommends: CONTINUE - refine the mesh near the boundary." in lines


def test_review_summary_omits_missing_sections() -> None:
    assert review_summary_lines("# Nothing useful here\n") == []


def test_primary_question_falls_back_between_headings() -> None:
    assert extract_primary_question("## Problem Statement\n\nHow hot does it get?\n") == "How hot does it get?"
    assert extract_primary_question("## Something else\ntext\n") is None


def test_acceptance_lines_stop_at_next_section() -> None:
    content = "## Success Criteria\n- A\n\n- B\n## Other\n- C\n"
    assert extract_acceptance_lines(content, 5) == ["- A", "- B"]
    assert extract_acceptance_lines(content, 1) == ["- A"]


def test_verification_cases_counted_from_headings() -> None:
    content = "### V0-1 Energy\n### V1-2 Mass\n## Notes\nV2-3 later\n"
    assert count_verification_cases(content) == 2


def test_stack_info_hidden_while_unresolved() -> None:
    assert extract_stack_info("## Language & Runtime\n\nPython 3.12 + NumPy\n") == "Python 3.12 + NumPy"
    assert extract_stack_info("## Language & Runtime\nTo be resolved by scope\n") is None


def test_sanity_line_skips_headings() -> None:
    assert extract_sanity_line("### Sanity checks: heading\nsanity checks: 2/3\n") == "2/3"


def test_redirect_template_has_no_guidance() -> None:
    template = "# Human Redirect - Pass 1\n\n<!-- Write your guidance -->\n<!--\nmulti\nline\n-->\n\n"
    assert not has_guidance(template)
    assert has_guidance(template + "Use the implicit solver.\n")
    assert redirect_guidance(template + "Use the implicit solver.\n") == "Use the implicit solver."


def test_scope_feedback_content_detection() -> None:
    assert not scope_feedback_has_content("# Scope Feedback\n\n## Other\n-\n")
    assert scope_feedback_has_content("# Scope Feedback\n\n## Other\n- tighten criterion 2\n")


def test_scope_summary_reads_artifacts(tmp_path: Path) -> None:
    pass0 = tmp_path / "spiral" / "pass-0"
    pass0.mkdir(parents=True)
    (tmp_path / "methodology").mkdir()
    (pass0 / "acceptance-criteria.md").write_text(
        "## Primary Question\nHow hot?\n\n## Success Criteria\n- within 5%\n", encoding="utf-8"
    )
    (tmp_path / "methodology" / "methodology.md").write_text(
        "## Phenomenon\nheat\n## Recommended Approach\nFinite volume\n## Boundary Conditions\n",
        encoding="utf-8",
    )
    (tmp_path / "methodology" / "plan.md").write_text(plan_text(("TODO", 1), ("BLOCKED", 2)), encoding="utf-8")
    (pass0 / "validation-strategy.md").write_text("### V0-1 a\n### V1-1 b\n", encoding="utf-8")
    (pass0 / "spiral-plan.md").write_text(
        "| Pass | Scope |\n|---|---|\n| 1 | coarse |\n| 2 | fine |\n", encoding="utf-8"
    )

    lines = scope_summary_lines(tmp_path)

    assert "Question: How hot?" in lines
    assert "Approach: Finite volume" in lines
    assert "Tasks:    2 total (1 TODO, 1 BLOCKED)" in lines
    assert "DDV cases: 2" in lines
    assert "  - within 5%" in lines
    assert "  | 1 | coarse |" in lines
    assert "  | Pass | Scope |" in lines
    assert "  ## Boundary Conditions" in lines
    assert "  ## Phenomenon" not in lines


def test_editor_resolution_order(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EDITOR", "code --wait")
    monkeypatch.setenv("VISUAL", "nano")
    assert resolve_editor() == ["code", "--wait"]
    monkeypatch.delenv("EDITOR")
    assert resolve_editor() == ["nano"]
    monkeypatch.delenv("VISUAL")
    assert resolve_editor() == ["vi"]


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------


def test_gates_default_without_pause(tmp_path: Path) -> None:
    gates = _gates(tmp_path, pause=False)
    env_file = tmp_path / "spiral" / "pass-0" / "environment-resolution.md"
    env_file.parent.mkdir(parents=True)
    env_file.write_text("Missing: gfortran\n", encoding="utf-8")

    assert gates.scope_review() == "approve"
    assert gates.pass_review(1) == "continue"
    assert gates.block_review(1, tmp_path / "plan.md") == "skip"
    assert gates.environment_review() == "proceed"


@pytest.mark.parametrize(
    "answer, decision",
    [("A", "approve"), ("R", "refine"), ("E", "edit"), ("Q", "quit")],
)
def test_scope_review_choices(tmp_path: Path, answer: str, decision: str) -> None:
    assert _gates(tmp_path, answer).scope_review() == decision


def test_pass_review_accept_and_continue(tmp_path: Path) -> None:
    pass_dir = tmp_path / "spiral" / "pass-1"
    pass_dir.mkdir(parents=True)
    (pass_dir / "review-package.md").write_text(REVIEW_PACKAGE, encoding="utf-8")
    gates = _gates(tmp_path, "A", "C")
    assert gates.pass_review(1) == "accept"
    assert gates.pass_review(1) == "continue"


def test_redirect_with_guidance_is_kept(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    gates = _gates(tmp_path, "R", edits="Switch to an implicit scheme.\n")
    assert gates.pass_review(2) == "redirect"
    redirect = tmp_path / "spiral" / "pass-2" / "human-redirect.md"
    assert "Switch to an implicit scheme." in redirect.read_text(encoding="utf-8")
    assert "Review package not found" in capsys.readouterr().out


def test_redirect_with_only_template_means_continue(tmp_path: Path) -> None:
    gates = _gates(tmp_path, "R")
    assert gates.pass_review(2) == "continue"
    assert not (tmp_path / "spiral" / "pass-2" / "human-redirect.md").exists()


def test_block_review_choices(tmp_path: Path) -> None:
    plan = tmp_path / "plan.md"
    plan.write_text(plan_text(("DONE", 1), ("BLOCKED", 1)), encoding="utf-8")
    gates = _gates(tmp_path, "F", "S", "X")
    assert gates.block_review(1, plan) == "fix"
    assert gates.block_review(1, plan) == "skip"
    assert gates.block_review(1, plan) == "abort"


def test_environment_gate_only_prompts_when_file_has_content(tmp_path: Path) -> None:
    gates = _gates(tmp_path, "F", "S")
    assert gates.environment_review() == "proceed"

    env_file = tmp_path / "spiral" / "pass-0" / "environment-resolution.md"
    env_file.parent.mkdir(parents=True)
    env_file.write_text("   \n", encoding="utf-8")
    assert gates.environment_review() == "proceed"

    env_file.write_text("Missing: gfortran\n", encoding="utf-8")
    assert gates.environment_review() == "fix"
    assert gates.environment_review() == "skip"
