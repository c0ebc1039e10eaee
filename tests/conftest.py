from __future__ import annotations

import shutil
import subprocess
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

import pytest

from lisa.config import default_config
from lisa.models import AgentResult, AgentStats, LisaConfig, ToolCall, UsageInfo


def git(repo: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", "-C", str(repo), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return proc.stdout.strip()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "project"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "config", "user.email", "lisa@example.com")
    git(repo, "config", "user.name", "Lisa Tests")
    git(repo, "config", "commit.gpgsign", "false")
    git(repo, "config", "tag.gpgsign", "false")
    (repo / "README.md").write_text("# project\n", encoding="utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


def make_config(**limits: Any) -> LisaConfig:
    config = default_config()
    if limits:
        config = replace(config, limits=replace(config.limits, **limits))
    return config


def scripted_choices(*answers: str) -> Callable[..., str]:
    """A ``prompt_choice`` replacement that replays ``answers`` in order."""
    pending = list(answers)
    asked: list[tuple[str, ...]] = []

    def _prompt_choice(choices, *, prompt: str = "") -> str:
        asked.append(tuple(key for key, _description in choices))
        if not pending:
            raise AssertionError(f"unexpected prompt with choices {asked[-1]}")
        return pending.pop(0)

    _prompt_choice.asked = asked  # type: ignore[attr-defined]
    _prompt_choice.pending = pending  # type: ignore[attr-defined]
    return _prompt_choice


class ScriptedAgent:
    """Stands in for the agent CLI.

    ``actions`` maps a label prefix (``"Scope"``, ``"Build"``, ...) to a
    callable that receives the call index for that prefix and may edit the
    project tree. Every call costs ``cost_usd``.
    """

    def __init__(
        self,
        project_root: Path,
        actions: dict[str, Callable[[int], None]] | None = None,
        *,
        cost_usd: float = 0.01,
        tool_logs: dict[str, tuple[ToolCall, ...]] | None = None,
    ) -> None:
        self.project_root = project_root
        self.actions = actions or {}
        self.cost_usd = cost_usd
        self.tool_logs = tool_logs or {}
        self.calls: list[dict[str, Any]] = []

    def _prefix(self, label: str) -> str:
        return label.split(":", 1)[0]

    def __call__(
        self,
        input_text: str,
        model: str,
        label: str,
        *,
        collapse_output: bool = True,
        error_log_path: Path | None = None,
    ) -> AgentResult:
        prefix = self._prefix(label)
        index = sum(1 for call in self.calls if self._prefix(call["label"]) == prefix)
        self.calls.append({"input_text": input_text, "model": model, "label": label})
        action = self.actions.get(prefix)
        if action is not None:
            action(index)
        return AgentResult(
            result_text=f"{label} done",
            stats=AgentStats(tool_count=1),
            elapsed_seconds=1.0,
            tool_log=self.tool_logs.get(prefix, ()),
            usage=UsageInfo(input_tokens=100, output_tokens=50, cost_usd=self.cost_usd),
        )

    def labels(self) -> list[str]:
        return [call["label"] for call in self.calls]


PLAN_HEADER = "# Plan\n\n"


def plan_text(*tasks: tuple[str, int]) -> str:
    blocks = [PLAN_HEADER]
    for index, (status, pass_number) in enumerate(tasks, start=1):
        blocks.append(
            f"### Task {index}: item {index}\n"
            f"**Status:** {status}\n"
            f"**Pass:** {pass_number}\n\n"
        )
    return "".join(blocks)
