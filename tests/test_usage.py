from __future__ import annotations

import json
from pathlib import Path

import pytest

from lisa.models import BudgetExceededError, UsageInfo
from lisa.usage import check_budget, format_usage_summary, load_usage, record_invocation


def test_budget_zero_means_unlimited() -> None:
    assert check_budget(1_000_000.0, 0.0, 80) is None
    assert check_budget(5.0, -1.0, 80) is None


def test_budget_below_warning_threshold_is_silent() -> None:
    assert check_budget(7.99, 10.0, 80) is None


def test_budget_warning_between_threshold_and_limit(capsys: pytest.CaptureFixture[str]) -> None:
    message = check_budget(8.0, 10.0, 80)
    assert message is not None
    assert "budget warning" in message
    assert "budget warning" in capsys.readouterr().err


def test_budget_exceeded_names_config_key_and_resume() -> None:
    with pytest.raises(BudgetExceededError) as excinfo:
        check_budget(10.0, 10.0, 80)
    assert "limits.budget_usd" in str(excinfo.value)
    assert "lisa.yaml" in str(excinfo.value)
    assert "lisa resume" in str(excinfo.value)


def test_record_invocation_accumulates_and_persists(tmp_path: Path) -> None:
    first = record_invocation(
        tmp_path, "scope", 0, "opus", UsageInfo(input_tokens=10, output_tokens=5, cost_usd=0.25), 12.5
    )
    second = record_invocation(
        tmp_path,
        "build",
        1,
        "sonnet",
        UsageInfo(input_tokens=20, output_tokens=7, cache_read_tokens=3, cost_usd=0.5),
        4.0,
    )
    assert first == pytest.approx(0.25)
    assert second == pytest.approx(0.75)

    ledger = load_usage(tmp_path)
    assert ledger.invocation_count() == 2
    assert ledger.passes() == [0, 1]
    assert ledger.phases() == ["scope", "build"]
    assert ledger.total_input_tokens() == 30
    assert ledger.total_cache_tokens() == 3
    assert ledger.pass_cost(1) == pytest.approx(0.5)

    payload = json.loads((tmp_path / "usage.json").read_text(encoding="utf-8"))
    assert payload["invocations"][1]["pass"] == 1
    assert payload["invocations"][1]["cache_read_input_tokens"] == 3


def test_usage_summary_lists_passes_and_phases(tmp_path: Path) -> None:
    record_invocation(tmp_path, "refine", 2, "opus", UsageInfo(cost_usd=1.0), 1.0)
    lines = format_usage_summary(load_usage(tmp_path))
    assert "invocations: 1" in lines
    assert "total_cost_usd: 1.0000" in lines
    assert "pass 2: $1.0000" in lines
    assert "phase refine: $1.0000" in lines


def test_missing_ledger_is_empty(tmp_path: Path) -> None:
    assert load_usage(tmp_path).total_cost() == 0.0
