"""Console output for the orchestrator and the live agent status line."""

from __future__ import annotations

import sys
import threading
import time
from datetime import datetime
from typing import TextIO

from lisa.constants import STATUS_TICK_SECONDS
from lisa.utils import _compact_log_text

SEPARATOR = "-" * 64


def _ts() -> str:
    return datetime.now().strftime("%H:%M:%S")


def _prefix() -> str:
    return f"[lisa {_ts()}]"


def log_info(message: str) -> None:
    print(f"{_prefix()} {message}")


def log_success(message: str) -> None:
    print(f"{_prefix()} OK {message}")


def log_warn(message: str) -> None:
    print(f"{_prefix()} WARNING {message}", file=sys.stderr)


def log_error(message: str) -> None:
    print(f"{_prefix()} ERROR {message}", file=sys.stderr)


def log_phase(title: str) -> None:
    print()
    print(f"{_prefix()} === {title} ===")


def print_separator() -> None:
    print(SEPARATOR)


def print_block(lines: list[str], *, indent: str = "  ") -> None:
    for line in lines:
        print(f"{indent}{line}" if line else "")


def _is_tty(stream: TextIO) -> bool:
    try:
        return bool(stream.isatty())
    except (AttributeError, ValueError):
        return False


# ---------------------------------------------------------------------------
# Live status line
# ---------------------------------------------------------------------------


class StatusCell:
    """Tool count and latest tool description shared with the ticker thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tool_count = 0
        self._latest = ""

    def record(self, detail: str) -> None:
        with self._lock:
            self._tool_count += 1
            self._latest = detail

    def snapshot(self) -> tuple[int, str]:
        with self._lock:
            return (self._tool_count, self._latest)


class StatusTicker:
    """Redraws a one-line status for a running agent until stopped.

    Display only: nothing in the orchestrator reads from the ticker, and it
    draws nothing when the stream is not a terminal.
    """

    def __init__(
        self,
        label: str,
        cell: StatusCell,
        *,
        interval: float = STATUS_TICK_SECONDS,
        stream: TextIO | None = None,
    ) -> None:
        self.label = label
        self.cell = cell
        self.interval = interval
        self.stream = stream if stream is not None else sys.stdout
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._started = 0.0

    def start(self) -> "StatusTicker":
        if self._thread is not None:
            return self
        self._started = time.monotonic()
        self._stop.clear()
        if _is_tty(self.stream):
            self._thread = threading.Thread(target=self._run, name="lisa-status", daemon=True)
            self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.join()
            self.stream.write("\r\x1b[2K")
            self.stream.flush()

    def __enter__(self) -> "StatusTicker":
        return self.start()

    def __exit__(self, *_exc: object) -> None:
        self.stop()

    def render(self) -> str:
        tool_count, latest = self.cell.snapshot()
        elapsed = int(time.monotonic() - self._started)
        line = f"  > {self.label} ... {elapsed}s, {tool_count} tools"
        if latest:
            line = f"{line} | {_compact_log_text(latest, limit=60)}"
        return line

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.stream.write(f"\r\x1b[2K{self.render()}")
            self.stream.flush()
