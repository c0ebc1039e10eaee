from __future__ import annotations

import importlib.resources as importlib_resources
from pathlib import Path

from lisa.constants import (
    AGENT_PHASES,
    HUMAN_REDIRECT_FILENAME,
    PHASE_DISPLAY_NAMES,
    PROMPT_TOKEN_PATTERN,
    SPIRAL_DIRNAME,
)
from lisa.models import ConfigError, LisaConfig
from lisa.utils import _safe_read_text


def _local_prompt_path(lisa_root: Path, phase: str) -> Path:
    return lisa_root / "prompts" / f"{phase}.md"


def _bundled_prompt_text(phase: str) -> str:
    resource = importlib_resources.files("lisa").joinpath("templates").joinpath(f"{phase}.md")
    return resource.read_text(encoding="utf-8")


def load_prompt(phase: str, lisa_root: Path) -> str:
    """Return the prompt for ``phase``, preferring an ejected local copy."""
    if phase not in AGENT_PHASES:
        raise ConfigError(f"no prompt is defined for phase '{phase}'")
    local_path = _local_prompt_path(lisa_root, phase)
    if local_path.exists():
        text = _safe_read_text(local_path)
        if text.strip():
            return text
    return _bundled_prompt_text(phase)


def _prompt_token_values(config: LisaConfig) -> dict[str, str]:
    return {
        "lisa_root": config.paths.lisa_root,
        "source_dirs": config.source_dirs_display(),
        "tests_ddv": config.paths.tests_ddv,
        "tests_software": config.paths.tests_software,
        "tests_integration": config.paths.tests_integration,
        "project_name": config.project_name,
    }


def render_prompt(template_text: str, config: LisaConfig) -> str:
    values = _prompt_token_values(config)

    def _replace_token(match) -> str:
        token = match.group(1).strip()
        return values.get(token, match.group(0))

    return PROMPT_TOKEN_PATTERN.sub(_replace_token, template_text)


def redirect_path(lisa_root: Path, pass_number: int) -> Path:
    return lisa_root / SPIRAL_DIRNAME / f"pass-{pass_number}" / HUMAN_REDIRECT_FILENAME


def build_context_preamble(
    config: LisaConfig,
    current_pass: int,
    phase: str,
    *,
    human_redirect: bool,
) -> str:
    lisa_root = config.paths.lisa_root
    lines = [
        "## Lisa Loop Context",
        "",
        "### Project",
        f"- Name: {config.project_name}",
        f"- Lisa root: {lisa_root}",
        "",
        "### Paths",
        "- ASSIGNMENT: ASSIGNMENT.md",
        f"- AGENTS: {lisa_root}/AGENTS.md",
        f"- Methodology: {lisa_root}/methodology/",
        f"- Spiral: {lisa_root}/spiral/",
        f"- Validation: {lisa_root}/validation/",
        f"- References: {lisa_root}/references/",
        f"- Plots: {lisa_root}/plots/",
        f"- Source code: {config.source_dirs_display()} (deliverable)",
        f"- DDV tests: {config.paths.tests_ddv}",
        f"- Software tests: {config.paths.tests_software}",
        f"- Integration tests: {config.paths.tests_integration}",
        "",
        "### Current State",
        f"- Spiral pass: {current_pass}",
        f"- Phase: {PHASE_DISPLAY_NAMES.get(phase, phase)}",
    ]
    if current_pass > 0:
        previous = current_pass - 1
        lines.append(f"- Previous pass results: {lisa_root}/spiral/pass-{previous}/")
        if human_redirect:
            lines.append(f"- Human redirect: {lisa_root}/spiral/pass-{previous}/{HUMAN_REDIRECT_FILENAME}")
    return "\n".join(lines) + "\n"


def build_agent_input(
    phase: str,
    config: LisaConfig,
    lisa_root: Path,
    current_pass: int,
    extra_context: str | None = None,
) -> str:
    has_redirect = current_pass > 0 and redirect_path(lisa_root, current_pass - 1).exists()
    parts = [build_context_preamble(config, current_pass, phase, human_redirect=has_redirect)]
    if extra_context:
        parts.append(extra_context.rstrip() + "\n")
    parts.append(render_prompt(load_prompt(phase, lisa_root), config))
    return "\n".join(parts)


def eject_prompts(lisa_root: Path) -> tuple[list[str], list[str]]:
    """Copy bundled prompts into ``.lisa/prompts``; existing files are kept."""
    prompts_dir = lisa_root / "prompts"
    prompts_dir.mkdir(parents=True, exist_ok=True)
    written: list[str] = []
    skipped: list[str] = []
    for phase in AGENT_PHASES:
        target = _local_prompt_path(lisa_root, phase)
        if target.exists():
            skipped.append(target.name)
            continue
        target.write_text(_bundled_prompt_text(phase), encoding="utf-8")
        written.append(target.name)
    return (written, skipped)
