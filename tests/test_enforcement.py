from __future__ import annotations

from pathlib import Path

import pytest
from conftest import git

from lisa.enforcement import find_isolation_violations, verify_isolation, verify_tests_unmodified
from lisa.models import IsolationViolationError, ToolCall
from lisa.vcs import GitRepository

PROJECT = Path("/work/project")


@pytest.mark.parametrize(
    "call",
    [
        ToolCall.read("src/main.x"),
        ToolCall.read("./src/solver/core.x"),
        ToolCall.write("/work/project/src/main.x"),
        ToolCall.edit("src"),
        ToolCall.bash("cat src/main.x"),
        ToolCall.bash("grep -r flux ./src/"),
    ],
    ids=str,
)
def test_source_access_is_a_violation(call: ToolCall) -> None:
    assert find_isolation_violations([call], ("src",), PROJECT) == [call]


@pytest.mark.parametrize(
    "call",
    [
        ToolCall.read("tests/ddv/foo.x"),
        ToolCall.write("srcdata/table.csv"),
        ToolCall.read("/elsewhere/src/main.x"),
        ToolCall.bash("pytest tests/ddv"),
        ToolCall.glob("src/**/*.x"),
        ToolCall.grep("src/"),
        ToolCall.other("WebSearch"),
    ],
    ids=str,
)
def test_non_source_access_is_allowed(call: ToolCall) -> None:
    assert find_isolation_violations([call], ("src",), PROJECT) == []


def test_verify_isolation_lists_every_violation() -> None:
    calls = [ToolCall.read("src/a.x"), ToolCall.read("docs/ok.md"), ToolCall.bash("ls lib/")]
    with pytest.raises(IsolationViolationError) as excinfo:
        verify_isolation(calls, ("src", "lib"), PROJECT)
    message = str(excinfo.value)
    assert "2 source access violation(s)" in message
    assert "Read src/a.x" in message
    assert "Bash $ ls lib/" in message


def test_verify_isolation_passes_clean_log() -> None:
    verify_isolation([ToolCall.write("tests/ddv/test_energy.x")], ("src",), PROJECT)


def test_verify_tests_unmodified_reverts_and_removes(git_repo: Path) -> None:
    ddv = git_repo / "tests" / "ddv"
    ddv.mkdir(parents=True)
    (ddv / "test_energy.x").write_text("assert energy == 1\n", encoding="utf-8")
    git(git_repo, "add", "-A")
    git(git_repo, "commit", "-q", "-m", "ddv tests")

    (ddv / "test_energy.x").write_text("assert True\n", encoding="utf-8")
    (ddv / "test_extra.x").write_text("assert True\n", encoding="utf-8")

    touched = verify_tests_unmodified(GitRepository(git_repo), "tests/ddv")

    assert sorted(touched) == ["tests/ddv/test_energy.x", "tests/ddv/test_extra.x"]
    assert (ddv / "test_energy.x").read_text(encoding="utf-8") == "assert energy == 1\n"
    assert not (ddv / "test_extra.x").exists()


def test_verify_tests_unmodified_reverts_staged_changes(git_repo: Path) -> None:
    ddv = git_repo / "tests" / "ddv"
    ddv.mkdir(parents=True)
    (ddv / "test_energy.x").write_text("original\n", encoding="utf-8")
    git(git_repo, "add", "-A")
    git(git_repo, "commit", "-q", "-m", "ddv tests")
    (ddv / "test_energy.x").write_text("tampered\n", encoding="utf-8")
    git(git_repo, "add", "-A")

    verify_tests_unmodified(GitRepository(git_repo), "tests/ddv")

    assert (ddv / "test_energy.x").read_text(encoding="utf-8") == "original\n"
    assert git(git_repo, "status", "--porcelain") == ""


def test_verify_tests_unmodified_is_quiet_when_clean(git_repo: Path) -> None:
    assert verify_tests_unmodified(GitRepository(git_repo), "tests/ddv") == []
