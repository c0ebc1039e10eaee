"""Append-only ledger of agent invocations and budget enforcement."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from lisa import terminal
from lisa.constants import USAGE_FILENAME, USAGE_SCHEMA_VERSION
from lisa.models import (
    BudgetExceededError,
    InvocationRecord,
    StateError,
    UsageInfo,
    _coerce_float,
    _coerce_int,
)
from lisa.utils import _local_now, _read_json, _write_json


@dataclass
class UsageLedger:
    invocations: list[InvocationRecord] = field(default_factory=list)

    def append(self, record: InvocationRecord) -> None:
        self.invocations.append(record)

    def total_cost(self) -> float:
        return sum(record.cost_usd for record in self.invocations)

    def total_input_tokens(self) -> int:
        return sum(record.input_tokens for record in self.invocations)

    def total_output_tokens(self) -> int:
        return sum(record.output_tokens for record in self.invocations)

    def total_cache_tokens(self) -> int:
        return sum(record.cache_tokens for record in self.invocations)

    def pass_cost(self, pass_number: int) -> float:
        return sum(record.cost_usd for record in self.invocations if record.pass_number == pass_number)

    def phase_cost(self, phase: str) -> float:
        return sum(record.cost_usd for record in self.invocations if record.phase == phase)

    def invocation_count(self) -> int:
        return len(self.invocations)

    def passes(self) -> list[int]:
        return sorted({record.pass_number for record in self.invocations})

    def phases(self) -> list[str]:
        seen: list[str] = []
        for record in self.invocations:
            if record.phase not in seen:
                seen.append(record.phase)
        return seen


def usage_path(lisa_root: Path) -> Path:
    return lisa_root / USAGE_FILENAME


def _record_to_payload(record: InvocationRecord) -> dict[str, Any]:
    payload = asdict(record)
    payload["pass"] = payload.pop("pass_number")
    return payload


def _record_from_payload(payload: dict[str, Any]) -> InvocationRecord:
    return InvocationRecord(
        phase=str(payload.get("phase", "")),
        pass_number=_coerce_int(payload.get("pass"), default=0),
        model=str(payload.get("model", "")),
        input_tokens=_coerce_int(payload.get("input_tokens"), default=0),
        output_tokens=_coerce_int(payload.get("output_tokens"), default=0),
        cache_creation_input_tokens=_coerce_int(payload.get("cache_creation_input_tokens"), default=0),
        cache_read_input_tokens=_coerce_int(payload.get("cache_read_input_tokens"), default=0),
        cost_usd=_coerce_float(payload.get("cost_usd"), default=0.0),
        elapsed_seconds=_coerce_float(payload.get("elapsed_seconds"), default=0.0),
        timestamp=str(payload.get("timestamp", "")),
    )


def load_usage(lisa_root: Path) -> UsageLedger:
    path = usage_path(lisa_root)
    if not path.exists():
        return UsageLedger()
    payload = _read_json(path)
    raw_invocations = payload.get("invocations", [])
    if not isinstance(raw_invocations, list):
        raise StateError(f"usage ledger 'invocations' must be a list: {path}")
    return UsageLedger(
        invocations=[_record_from_payload(item) for item in raw_invocations if isinstance(item, dict)]
    )


def save_usage(lisa_root: Path, ledger: UsageLedger) -> None:
    payload = {
        "schema_version": USAGE_SCHEMA_VERSION,
        "invocations": [_record_to_payload(record) for record in ledger.invocations],
    }
    _write_json(usage_path(lisa_root), payload)


def record_invocation(
    lisa_root: Path,
    phase: str,
    pass_number: int,
    model: str,
    usage: UsageInfo,
    elapsed_seconds: float,
) -> float:
    """Append one invocation to the ledger and return the cumulative cost."""
    ledger = load_usage(lisa_root)
    ledger.append(
        InvocationRecord(
            phase=phase,
            pass_number=pass_number,
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_creation_input_tokens=usage.cache_creation_tokens,
            cache_read_input_tokens=usage.cache_read_tokens,
            cost_usd=usage.cost_usd,
            elapsed_seconds=round(float(elapsed_seconds), 3),
            timestamp=_local_now(),
        )
    )
    save_usage(lisa_root, ledger)
    return ledger.total_cost()


def check_budget(cumulative_cost: float, budget_usd: float, budget_warn_pct: float) -> str | None:
    """Enforce the spend limit.

    A non-positive ``budget_usd`` means unlimited. Reaching the limit raises
    :class:`BudgetExceededError`; crossing ``budget_warn_pct`` percent of it
    returns the warning text after logging it.
    """
    if budget_usd <= 0:
        return None
    if cumulative_cost >= budget_usd:
        raise BudgetExceededError(
            f"budget exceeded: ${cumulative_cost:.4f} spent of ${budget_usd:.2f} limit. "
            "Increase limits.budget_usd in lisa.yaml, then run `lisa resume`."
        )
    warn_threshold = budget_usd * (budget_warn_pct / 100.0)
    if cumulative_cost >= warn_threshold:
        message = (
            f"budget warning: ${cumulative_cost:.4f} spent of ${budget_usd:.2f} limit "
            f"({budget_warn_pct:g}% threshold)"
        )
        terminal.log_warn(message)
        return message
    return None


def format_usage_summary(ledger: UsageLedger) -> list[str]:
    lines = [
        f"invocations: {ledger.invocation_count()}",
        f"input_tokens: {ledger.total_input_tokens()}",
        f"output_tokens: {ledger.total_output_tokens()}",
        f"cache_tokens: {ledger.total_cache_tokens()}",
        f"total_cost_usd: {ledger.total_cost():.4f}",
    ]
    for pass_number in ledger.passes():
        lines.append(f"pass {pass_number}: ${ledger.pass_cost(pass_number):.4f}")
    for phase in ledger.phases():
        lines.append(f"phase {phase}: ${ledger.phase_cost(phase):.4f}")
    return lines
