from __future__ import annotations

import io
import json
import subprocess
from pathlib import Path
from typing import Any

import pytest

from lisa.models import AgentConfig, AgentError, ToolCall
from lisa.runners import StreamAccumulator, _build_agent_argv, run_agent


def _assistant(*items: dict[str, Any]) -> str:
    return json.dumps({"type": "assistant", "message": {"content": list(items)}})


def _tool(name: str, **tool_input: str) -> dict[str, Any]:
    return {"type": "tool_use", "name": name, "input": tool_input}


RESULT_EVENT = json.dumps(
    {
        "type": "result",
        "result": "Implemented task 2.",
        "total_cost_usd": 0.42,
        "usage": {
            "input_tokens": 1200,
            "output_tokens": 300,
            "cache_creation_input_tokens": 50,
            "cache_read_input_tokens": 700,
        },
    }
)


class _KeepOpenStringIO(io.StringIO):
    def close(self) -> None:
        pass


class _FakePopen:
    last: "_FakePopen | None" = None

    def __init__(self, argv: list[str], *, stdout_lines: list[str], returncode: int, stderr_text: str = "", **kwargs: Any) -> None:
        self.argv = argv
        self.kwargs = kwargs
        self.stdin = _KeepOpenStringIO()
        self.stdout = io.StringIO("".join(f"{line}\n" for line in stdout_lines))
        self.stderr = io.StringIO(stderr_text)
        self.returncode = returncode
        self.signals: list[str] = []
        _FakePopen.last = self

    def wait(self, timeout: float | None = None) -> int:
        return self.returncode

    def terminate(self) -> None:
        self.signals.append("terminate")

    def kill(self) -> None:
        self.signals.append("kill")


def _patch_popen(monkeypatch: pytest.MonkeyPatch, stdout_lines: list[str], *, returncode: int = 0, stderr_text: str = "") -> None:
    def _factory(argv, **kwargs):
        return _FakePopen(argv, stdout_lines=stdout_lines, returncode=returncode, stderr_text=stderr_text, **kwargs)

    monkeypatch.setattr(subprocess, "Popen", _factory)


def test_accumulator_collects_tools_stats_and_usage() -> None:
    seen: list[str] = []
    thoughts: list[str] = []
    accumulator = StreamAccumulator(on_tool=seen.append, on_thinking=thoughts.append)
    for line in [
        "not json at all",
        "",
        _assistant({"type": "thinking", "thinking": "Plan first."}, {"type": "text", "text": "hi"}),
        _assistant(_tool("Read", file_path="plan.md"), _tool("Write", file_path="src/a.x")),
        _assistant(_tool("Edit", file_path="src/a.x"), _tool("Bash", command="pytest -q\nmore")),
        _assistant(_tool("Glob", pattern="**/*.x"), _tool("WebSearch", query="flux")),
        RESULT_EVENT,
    ]:
        accumulator.feed(line)

    stats = accumulator.stats()
    assert stats.tool_count == 6
    assert stats.file_writes == 2
    assert stats.test_runs == 1
    assert accumulator.tool_log[0] == ToolCall.read("plan.md")
    assert accumulator.tool_log[-1] == ToolCall.other("WebSearch")
    assert accumulator.result_text == "Implemented task 2."
    assert accumulator.usage.input_tokens == 1200
    assert accumulator.usage.cache_tokens == 750
    assert accumulator.usage.cost_usd == pytest.approx(0.42)
    assert seen[3] == "Bash $ pytest -q"
    assert thoughts == ["Plan first."]


def test_agent_argv_includes_model_and_extra_args() -> None:
    argv = _build_agent_argv(AgentConfig(command="claude-dev", extra_args=("--max-turns", "40")), "opus")
    assert argv[0] == "claude-dev"
    assert argv[argv.index("--model") + 1] == "opus"
    assert argv[argv.index("--output-format") + 1] == "stream-json"
    assert argv[-2:] == ["--max-turns", "40"]
    assert "-p" in argv


def test_run_agent_sends_prompt_on_stdin(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _patch_popen(monkeypatch, [_assistant(_tool("Write", file_path="src/a.x")), RESULT_EVENT])

    result = run_agent("do the thing", "sonnet", "Build: iter 1", collapse_output=False, cwd=tmp_path)

    fake = _FakePopen.last
    assert fake is not None
    assert fake.stdin.getvalue() == "do the thing"
    assert fake.kwargs["cwd"] == str(tmp_path)
    assert result.result_text == "Implemented task 2."
    assert result.tool_log == (ToolCall.write("src/a.x"),)
    assert result.stats.file_writes == 1
    assert result.usage.output_tokens == 300


def test_run_agent_failure_writes_report(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _patch_popen(
        monkeypatch,
        [_assistant(_tool("Bash", command="make build"))],
        returncode=3,
        stderr_text="fatal: out of credits\n",
    )
    error_log = tmp_path / "last-error.md"

    with pytest.raises(AgentError, match="exited with code 3"):
        run_agent("prompt", "opus", "Execute: pass 1", collapse_output=False, error_log_path=error_log)

    report = error_log.read_text(encoding="utf-8")
    assert "# Agent failure: Execute: pass 1" in report
    assert "- Model: opus" in report
    assert "- Exit code: 3" in report
    assert "Bash $ make build" in report
    assert "fatal: out of credits" in report


def test_run_agent_spawn_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def _missing(argv, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", argv[0])

    monkeypatch.setattr(subprocess, "Popen", _missing)
    with pytest.raises(AgentError, match="failed to spawn"):
        run_agent("prompt", "opus", "Scope", collapse_output=False)


class _InterruptedStdout:
    def __iter__(self):
        yield _assistant(_tool("Read", file_path="plan.md")) + "\n"
        raise KeyboardInterrupt

    def close(self) -> None:
        pass


def test_interrupted_run_terminates_the_agent(monkeypatch: pytest.MonkeyPatch) -> None:
    def _factory(argv, **kwargs):
        fake = _FakePopen(argv, stdout_lines=[], returncode=-15, **kwargs)
        fake.stdout = _InterruptedStdout()
        return fake

    monkeypatch.setattr(subprocess, "Popen", _factory)

    with pytest.raises(KeyboardInterrupt):
        run_agent("prompt", "sonnet", "Build: iter 1", collapse_output=False)

    fake = _FakePopen.last
    assert fake is not None
    assert fake.signals == ["terminate"]
