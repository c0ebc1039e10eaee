from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from lisa.constants import (
    COMMAND_KEYS,
    CONFIG_FILENAME,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_BUDGET_USD,
    DEFAULT_BUDGET_WARN_PCT,
    DEFAULT_FAST_MODEL,
    DEFAULT_LISA_ROOT,
    DEFAULT_MAX_RALPH_ITERATIONS,
    DEFAULT_MAX_SPIRAL_PASSES,
    DEFAULT_SOURCE_DIRS,
    DEFAULT_STALL_THRESHOLD,
    DEFAULT_STRONG_MODEL,
    DEFAULT_TESTS_DDV,
    DEFAULT_TESTS_INTEGRATION,
    DEFAULT_TESTS_SOFTWARE,
    PHASE_MODEL_KEYS,
)
from lisa.models import (
    AgentConfig,
    ConfigError,
    GitConfig,
    LimitsConfig,
    LisaConfig,
    ModelsConfig,
    PathsConfig,
    ReviewConfig,
    TerminalConfig,
    _coerce_bool,
    _coerce_float,
    _coerce_positive_int,
    _coerce_str,
)


def _config_path(project_root: Path) -> Path:
    return project_root / CONFIG_FILENAME


def _load_config_payload(project_root: Path) -> dict[str, Any]:
    config_path = _config_path(project_root)
    if not config_path.exists():
        raise ConfigError(f"{CONFIG_FILENAME} not found at {config_path}")
    try:
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"{CONFIG_FILENAME} is not valid YAML: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"failed to read {config_path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the top level")
    return loaded


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def _load_models_config(payload: dict[str, Any]) -> ModelsConfig:
    models = _section(payload, "models")
    return ModelsConfig(
        scope=_coerce_str(models.get("scope"), default=DEFAULT_STRONG_MODEL),
        refine=_coerce_str(models.get("refine"), default=DEFAULT_STRONG_MODEL),
        ddv=_coerce_str(models.get("ddv"), default=DEFAULT_STRONG_MODEL),
        build=_coerce_str(models.get("build"), default=DEFAULT_FAST_MODEL),
        execute=_coerce_str(models.get("execute"), default=DEFAULT_STRONG_MODEL),
        validate=_coerce_str(models.get("validate"), default=DEFAULT_STRONG_MODEL),
    )


def _load_limits_config(payload: dict[str, Any]) -> LimitsConfig:
    limits = _section(payload, "limits")
    budget_usd = _coerce_float(limits.get("budget_usd", DEFAULT_BUDGET_USD), default=DEFAULT_BUDGET_USD)
    warn_pct = _coerce_float(
        limits.get("budget_warn_pct", DEFAULT_BUDGET_WARN_PCT), default=DEFAULT_BUDGET_WARN_PCT
    )
    if warn_pct <= 0 or warn_pct > 100:
        warn_pct = float(DEFAULT_BUDGET_WARN_PCT)
    return LimitsConfig(
        max_spiral_passes=_coerce_positive_int(
            limits.get("max_spiral_passes"), default=DEFAULT_MAX_SPIRAL_PASSES
        ),
        max_ralph_iterations=_coerce_positive_int(
            limits.get("max_ralph_iterations"), default=DEFAULT_MAX_RALPH_ITERATIONS
        ),
        stall_threshold=_coerce_positive_int(
            limits.get("stall_threshold"), default=DEFAULT_STALL_THRESHOLD
        ),
        budget_usd=budget_usd,
        budget_warn_pct=warn_pct,
    )


def _load_source_dirs(raw: Any) -> tuple[str, ...]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        return DEFAULT_SOURCE_DIRS
    dirs: list[str] = []
    for item in raw:
        text = str(item).strip().strip("/")
        if text.startswith("./"):
            text = text[2:]
        if text and text not in dirs:
            dirs.append(text)
    return tuple(dirs) or DEFAULT_SOURCE_DIRS


def _load_paths_config(payload: dict[str, Any]) -> PathsConfig:
    paths = _section(payload, "paths")
    return PathsConfig(
        lisa_root=_coerce_str(paths.get("lisa_root"), default=DEFAULT_LISA_ROOT),
        source=_load_source_dirs(paths.get("source", list(DEFAULT_SOURCE_DIRS))),
        tests_ddv=_coerce_str(paths.get("tests_ddv"), default=DEFAULT_TESTS_DDV).rstrip("/"),
        tests_software=_coerce_str(paths.get("tests_software"), default=DEFAULT_TESTS_SOFTWARE).rstrip("/"),
        tests_integration=_coerce_str(
            paths.get("tests_integration"), default=DEFAULT_TESTS_INTEGRATION
        ).rstrip("/"),
    )


def _load_commands_config(payload: dict[str, Any]) -> dict[str, str]:
    commands = _section(payload, "commands")
    return {key: _coerce_str(commands.get(key)) for key in COMMAND_KEYS}


def _load_agent_config(payload: dict[str, Any]) -> AgentConfig:
    agent = _section(payload, "agent")
    raw_args = agent.get("extra_args", [])
    if isinstance(raw_args, str):
        raw_args = raw_args.split()
    extra_args = tuple(str(item) for item in raw_args) if isinstance(raw_args, (list, tuple)) else ()
    return AgentConfig(
        command=_coerce_str(agent.get("command"), default=DEFAULT_AGENT_COMMAND),
        extra_args=extra_args,
    )


def _config_from_payload(payload: dict[str, Any]) -> LisaConfig:
    project = _section(payload, "project")
    review = _section(payload, "review")
    git = _section(payload, "git")
    terminal = _section(payload, "terminal")
    return LisaConfig(
        project_name=_coerce_str(project.get("name"), default="lisa-project"),
        models=_load_models_config(payload),
        limits=_load_limits_config(payload),
        review=ReviewConfig(pause=_coerce_bool(review.get("pause"), default=True)),
        git=GitConfig(
            auto_commit=_coerce_bool(git.get("auto_commit"), default=True),
            auto_push=_coerce_bool(git.get("auto_push"), default=False),
        ),
        terminal=TerminalConfig(
            collapse_output=_coerce_bool(terminal.get("collapse_output"), default=True)
        ),
        paths=_load_paths_config(payload),
        commands=_load_commands_config(payload),
        agent=_load_agent_config(payload),
    )


def load_config(project_root: Path) -> LisaConfig:
    return _config_from_payload(_load_config_payload(project_root))


def default_config() -> LisaConfig:
    return _config_from_payload({})


def with_overrides(
    config: LisaConfig,
    *,
    pause: bool | None = None,
    collapse_output: bool | None = None,
    max_spiral_passes: int | None = None,
) -> LisaConfig:
    updated = config
    if pause is not None:
        updated = replace(updated, review=ReviewConfig(pause=pause))
    if collapse_output is not None:
        updated = replace(updated, terminal=TerminalConfig(collapse_output=collapse_output))
    if max_spiral_passes is not None and max_spiral_passes > 0:
        updated = replace(updated, limits=replace(updated.limits, max_spiral_passes=max_spiral_passes))
    return updated


def lisa_root_path(config: LisaConfig, project_root: Path) -> Path:
    return project_root / config.paths.lisa_root


def model_for_phase(config: LisaConfig, phase: str) -> str:
    key = PHASE_MODEL_KEYS.get(phase)
    if key is None:
        raise ConfigError(f"unknown phase '{phase}'")
    return str(getattr(config.models, key))


def default_config_yaml(project_name: str) -> str:
    payload = {
        "project": {"name": project_name},
        "models": {
            "scope": DEFAULT_STRONG_MODEL,
            "refine": DEFAULT_STRONG_MODEL,
            "ddv": DEFAULT_STRONG_MODEL,
            "build": DEFAULT_FAST_MODEL,
            "execute": DEFAULT_STRONG_MODEL,
            "validate": DEFAULT_STRONG_MODEL,
        },
        "limits": {
            "max_spiral_passes": DEFAULT_MAX_SPIRAL_PASSES,
            "max_ralph_iterations": DEFAULT_MAX_RALPH_ITERATIONS,
            "stall_threshold": DEFAULT_STALL_THRESHOLD,
            "budget_usd": DEFAULT_BUDGET_USD,
            "budget_warn_pct": DEFAULT_BUDGET_WARN_PCT,
        },
        "review": {"pause": True},
        "git": {"auto_commit": True, "auto_push": False},
        "terminal": {"collapse_output": True},
        "paths": {
            "lisa_root": DEFAULT_LISA_ROOT,
            "source": list(DEFAULT_SOURCE_DIRS),
            "tests_ddv": DEFAULT_TESTS_DDV,
            "tests_software": DEFAULT_TESTS_SOFTWARE,
            "tests_integration": DEFAULT_TESTS_INTEGRATION,
        },
        "commands": {key: "" for key in COMMAND_KEYS},
        "agent": {"command": DEFAULT_AGENT_COMMAND, "extra_args": []},
    }
    return yaml.safe_dump(payload, sort_keys=False)
