from __future__ import annotations

from pathlib import Path

import pytest

import lisa.prompts as prompts_module
from lisa.config import default_config
from lisa.constants import AGENT_PHASES
from lisa.models import ConfigError
from lisa.prompts import build_agent_input, eject_prompts, load_prompt, render_prompt


@pytest.mark.parametrize("phase", AGENT_PHASES)
def test_every_phase_has_a_bundled_prompt(tmp_path: Path, phase: str) -> None:
    text = load_prompt(phase, tmp_path)
    assert text.strip()


class _OneSegmentPath:
    """Traversable that only joins a single segment per call, like namespace package paths on 3.10 and 3.11."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def joinpath(self, child: str) -> "_OneSegmentPath":
        return _OneSegmentPath(self._path / child)

    def read_text(self, encoding: str = "utf-8") -> str:
        return self._path.read_text(encoding=encoding)


def test_bundled_prompts_resolve_through_single_segment_joins(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    package_dir = Path(prompts_module.__file__).resolve().parent
    monkeypatch.setattr(prompts_module.importlib_resources, "files", lambda name: _OneSegmentPath(package_dir))
    for phase in AGENT_PHASES:
        expected = (package_dir / "templates" / f"{phase}.md").read_text(encoding="utf-8")
        assert load_prompt(phase, tmp_path) == expected


def test_rendered_prompts_leave_no_known_tokens(tmp_path: Path) -> None:
    config = default_config()
    for phase in AGENT_PHASES:
        rendered = render_prompt(load_prompt(phase, tmp_path), config)
        for token in ("{{lisa_root}}", "{{source_dirs}}", "{{tests_ddv}}"):
            assert token not in rendered, (phase, token)


def test_render_substitutes_known_and_keeps_unknown_tokens() -> None:
    rendered = render_prompt("Read ASSIGNMENT.md and {{tests_ddv}}/ then {{ mystery }}.", default_config())
    assert rendered == "Read ASSIGNMENT.md and tests/ddv/ then {{ mystery }}."


def test_local_prompt_overrides_bundled(tmp_path: Path) -> None:
    (tmp_path / "prompts").mkdir()
    (tmp_path / "prompts" / "build.md").write_text("LOCAL BUILD {{source_dirs}}\n", encoding="utf-8")
    assert load_prompt("build", tmp_path) == "LOCAL BUILD {{source_dirs}}\n"


def test_unknown_phase_is_a_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_prompt("deploy", tmp_path)


def test_agent_input_has_preamble_extra_context_and_prompt(tmp_path: Path) -> None:
    config = default_config()
    text = build_agent_input("execute", config, tmp_path, 2, "Current spiral pass: 2")
    preamble_at = text.index("## Lisa Loop Context")
    extra_at = text.index("Current spiral pass: 2")
    prompt_at = text.index("# Phase: Execute")
    assert preamble_at < extra_at < prompt_at
    assert "- Spiral pass: 2" in text
    assert "- Phase: Execute" in text
    assert "- Previous pass results: .lisa/spiral/pass-1/" in text
    assert "Human redirect" not in text


def test_agent_input_mentions_redirect_file_when_present(tmp_path: Path) -> None:
    redirect = tmp_path / "spiral" / "pass-1" / "human-redirect.md"
    redirect.parent.mkdir(parents=True)
    redirect.write_text("Try the implicit scheme.\n", encoding="utf-8")
    text = build_agent_input("refine", default_config(), tmp_path, 2)
    assert "- Human redirect: .lisa/spiral/pass-1/human-redirect.md" in text


def test_eject_prompts_skips_existing_files(tmp_path: Path) -> None:
    (tmp_path / "prompts").mkdir()
    (tmp_path / "prompts" / "scope.md").write_text("mine\n", encoding="utf-8")
    written, skipped = eject_prompts(tmp_path)
    assert skipped == ["scope.md"]
    assert len(written) == len(AGENT_PHASES) - 1
    assert (tmp_path / "prompts" / "scope.md").read_text(encoding="utf-8") == "mine\n"
    assert (tmp_path / "prompts" / "finalize.md").read_text(encoding="utf-8") == load_prompt("finalize", tmp_path)
