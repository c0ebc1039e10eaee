from __future__ import annotations

import json
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable

from lisa import terminal
from lisa.constants import (
    AGENT_BASE_ARGS,
    AGENT_ERROR_TAIL_CALLS,
    AGENT_STDERR_TAIL_LINES,
    AGENT_TERMINATE_GRACE_SECONDS,
    DEFAULT_AGENT_COMMAND,
    THINKING_PREVIEW_LIMIT,
    TOOL_DETAIL_LIMIT,
)
from lisa.models import (
    TOOL_BASH,
    TOOL_EDIT,
    TOOL_GLOB,
    TOOL_GREP,
    TOOL_READ,
    TOOL_TASK,
    TOOL_WRITE,
    AgentConfig,
    AgentError,
    AgentResult,
    AgentStats,
    ToolCall,
    UsageInfo,
    _coerce_float,
    _coerce_int,
)
from lisa.utils import _atomic_write_text, _compact_log_text, _local_now, _redact_sensitive_text


# Signature: (input_text, model, label, *, collapse_output, error_log_path) -> AgentResult
AgentRunner = Callable[..., AgentResult]


_TOOL_INPUT_KEYS = {
    TOOL_READ: "file_path",
    TOOL_WRITE: "file_path",
    TOOL_EDIT: "file_path",
    TOOL_BASH: "command",
    TOOL_GLOB: "pattern",
    TOOL_GREP: "pattern",
    TOOL_TASK: "description",
}


def _parse_tool_call(name: str, tool_input: Any) -> ToolCall:
    key = _TOOL_INPUT_KEYS.get(name)
    if key is None:
        return ToolCall.other(name)
    value = tool_input.get(key, "") if isinstance(tool_input, dict) else ""
    return ToolCall(name, str(value or ""))


def _format_tool_detail(call: ToolCall) -> str:
    if call.kind == TOOL_BASH:
        first_line = call.value.splitlines()[0] if call.value else ""
        return f"Bash $ {first_line[:TOOL_DETAIL_LIMIT]}"
    return str(call)


def _parse_usage(event: dict[str, Any]) -> UsageInfo:
    usage = event.get("usage")
    if not isinstance(usage, dict):
        usage = {}
    cost = event.get("total_cost_usd", event.get("cost_usd", 0.0))
    return UsageInfo(
        input_tokens=_coerce_int(usage.get("input_tokens"), default=0),
        output_tokens=_coerce_int(usage.get("output_tokens"), default=0),
        cache_creation_tokens=_coerce_int(usage.get("cache_creation_input_tokens"), default=0),
        cache_read_tokens=_coerce_int(usage.get("cache_read_input_tokens"), default=0),
        cost_usd=_coerce_float(cost, default=0.0),
    )


class StreamAccumulator:
    """Folds the agent's stream-json lines into stats, a tool log and usage."""

    def __init__(
        self,
        *,
        on_tool: Callable[[str], None] | None = None,
        on_thinking: Callable[[str], None] | None = None,
    ) -> None:
        self.on_tool = on_tool
        self.on_thinking = on_thinking
        self.tool_log: list[ToolCall] = []
        self.tool_count = 0
        self.file_writes = 0
        self.test_runs = 0
        self.result_text = ""
        self.usage = UsageInfo()

    def feed(self, line: str) -> None:
        text = line.strip()
        if not text:
            return
        try:
            event = json.loads(text)
        except json.JSONDecodeError:
            return
        if not isinstance(event, dict):
            return
        event_type = event.get("type")
        if event_type == "assistant":
            message = event.get("message")
            contents = message.get("content") if isinstance(message, dict) else None
            if isinstance(contents, list):
                for item in contents:
                    if isinstance(item, dict):
                        self._feed_content_item(item)
        elif event_type == "result":
            result = event.get("result")
            if isinstance(result, str):
                self.result_text = result
            self.usage = _parse_usage(event)

    def _feed_content_item(self, item: dict[str, Any]) -> None:
        item_type = item.get("type")
        if item_type == "thinking":
            thought = item.get("thinking")
            if isinstance(thought, str) and self.on_thinking is not None:
                self.on_thinking(thought)
            return
        if item_type != "tool_use":
            return
        name = str(item.get("name", ""))
        call = _parse_tool_call(name, item.get("input"))
        self.tool_count += 1
        self.tool_log.append(call)
        if call.kind in (TOOL_WRITE, TOOL_EDIT):
            self.file_writes += 1
        if call.kind == TOOL_BASH and ("test" in call.value or "pytest" in call.value):
            self.test_runs += 1
        if self.on_tool is not None:
            self.on_tool(_format_tool_detail(call))

    def stats(self) -> AgentStats:
        return AgentStats(
            tool_count=self.tool_count,
            file_writes=self.file_writes,
            test_runs=self.test_runs,
        )


def _build_agent_argv(agent_config: AgentConfig | None, model: str) -> list[str]:
    command = agent_config.command if agent_config is not None else DEFAULT_AGENT_COMMAND
    extra_args = list(agent_config.extra_args) if agent_config is not None else []
    return [
        command,
        *AGENT_BASE_ARGS,
        "--model",
        model,
        "--output-format",
        "stream-json",
        *extra_args,
    ]


def _write_failure_report(
    path: Path,
    *,
    label: str,
    model: str,
    exit_code: int,
    elapsed_seconds: float,
    tool_log: list[ToolCall],
    result_text: str,
    stderr_tail: list[str],
) -> None:
    lines = [
        f"# Agent failure: {label}",
        "",
        f"- Timestamp: {_local_now()}",
        f"- Model: {model}",
        f"- Exit code: {exit_code}",
        f"- Elapsed: {elapsed_seconds:.0f}s",
        f"- Tool calls: {len(tool_log)}",
        "",
        f"## Last {AGENT_ERROR_TAIL_CALLS} tool calls",
        "",
    ]
    recent = tool_log[-AGENT_ERROR_TAIL_CALLS:]
    if recent:
        lines.extend(f"- {_redact_sensitive_text(_format_tool_detail(call))}" for call in recent)
    else:
        lines.append("- (none)")
    lines.extend(["", "## Partial result", ""])
    lines.append(_redact_sensitive_text(result_text.strip()) or "(none)")
    if stderr_tail:
        lines.extend(["", "## stderr (tail)", "", "```"])
        lines.extend(_redact_sensitive_text(line.rstrip("\n")) for line in stderr_tail)
        lines.append("```")
    _atomic_write_text(path, "\n".join(lines) + "\n")


def _summary_text(stats: AgentStats) -> str:
    summary = f"{stats.tool_count} tools"
    if stats.file_writes:
        summary += f", {stats.file_writes} files written"
    if stats.test_runs:
        summary += f", {stats.test_runs} test runs"
    return summary


def _stop_process(process: subprocess.Popen) -> None:
    process.terminate()
    try:
        process.wait(timeout=AGENT_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def run_agent(
    input_text: str,
    model: str,
    label: str,
    *,
    collapse_output: bool = True,
    error_log_path: Path | None = None,
    agent_config: AgentConfig | None = None,
    cwd: Path | None = None,
) -> AgentResult:
    """Run the agent CLI once and return what it did.

    The prompt goes in on stdin; stdout is the agent's stream-json event feed.
    A non-zero exit writes a failure report to ``error_log_path`` (when given)
    before :class:`AgentError` is raised.
    """
    argv = _build_agent_argv(agent_config, model)
    terminal.log_info(f"Calling agent: {label} (model: {model})")

    cell = terminal.StatusCell()

    def _show_tool(detail: str) -> None:
        cell.record(detail)
        if not collapse_output:
            print(f"    [{terminal._ts()}] {detail}")

    def _show_thinking(thought: str) -> None:
        if not collapse_output:
            print(f"    [{terminal._ts()} thinking] {_compact_log_text(thought, limit=THINKING_PREVIEW_LIMIT)}")

    accumulator = StreamAccumulator(on_tool=_show_tool, on_thinking=_show_thinking)
    stderr_tail: deque[str] = deque(maxlen=AGENT_STDERR_TAIL_LINES)

    def _pump_stderr(stream: Any) -> None:
        if stream is None:
            return
        try:
            for line in iter(stream.readline, ""):
                stderr_tail.append(line)
        finally:
            try:
                stream.close()
            except OSError:
                pass

    started = time.monotonic()
    try:
        process = subprocess.Popen(
            argv,
            cwd=str(cwd) if cwd is not None else None,
            text=True,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=1,
        )
    except OSError as exc:
        raise AgentError(
            f"failed to spawn agent CLI '{argv[0]}': {exc}. Is it installed and on PATH?"
        ) from exc

    stderr_thread = threading.Thread(target=_pump_stderr, args=(process.stderr,), daemon=True)
    stderr_thread.start()
    ticker = terminal.StatusTicker(label, cell) if collapse_output else None
    try:
        if ticker is not None:
            ticker.start()
        if process.stdin is not None:
            try:
                process.stdin.write(input_text)
                process.stdin.flush()
            except BrokenPipeError:
                pass
            finally:
                process.stdin.close()
        if process.stdout is not None:
            for line in process.stdout:
                accumulator.feed(line)
        returncode = process.wait()
    except BaseException:
        _stop_process(process)
        raise
    finally:
        if ticker is not None:
            ticker.stop()
        stderr_thread.join(timeout=2)

    elapsed = time.monotonic() - started
    stats = accumulator.stats()
    if returncode != 0:
        report_note = ""
        if error_log_path is not None:
            _write_failure_report(
                error_log_path,
                label=label,
                model=model,
                exit_code=returncode,
                elapsed_seconds=elapsed,
                tool_log=accumulator.tool_log,
                result_text=accumulator.result_text,
                stderr_tail=list(stderr_tail),
            )
            report_note = f" Failure context saved to {error_log_path}."
        raise AgentError(
            f"agent '{label}' exited with code {returncode} after {elapsed:.0f}s.{report_note} "
            "Run `lisa resume` to retry from the last checkpoint."
        )

    terminal.log_success(f"{label} ({elapsed:.0f}s, {_summary_text(stats)})")
    if accumulator.result_text:
        print()
        print("    -- Result --")
        for line in accumulator.result_text.splitlines():
            print(f"    {line}")
        print("    -- End --")
        print()

    return AgentResult(
        result_text=accumulator.result_text,
        stats=stats,
        elapsed_seconds=elapsed,
        tool_log=tuple(accumulator.tool_log),
        usage=accumulator.usage,
    )
