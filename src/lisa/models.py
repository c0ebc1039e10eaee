"""Lisa data models: exceptions, spiral state, agent results, and config dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Union


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except Exception:
        return default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed > 0 else default


def _coerce_str(value: Any, *, default: str = "") -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


class ConfigError(RuntimeError):
    """Raised when lisa.yaml is missing or malformed."""


class StateError(RuntimeError):
    """Raised when state cannot be loaded or validated."""


class AgentError(RuntimeError):
    """Raised when the agent process fails to spawn or exits non-zero."""


class GitError(RuntimeError):
    """Raised when a git command fails."""


class BudgetExceededError(RuntimeError):
    """Raised when cumulative agent cost reaches the configured budget."""


class IsolationViolationError(RuntimeError):
    """Raised when a test-writing agent touched production source paths."""


class RollbackError(RuntimeError):
    """Raised when a rollback request cannot be honoured."""


class LockError(RuntimeError):
    """Raised when another orchestrator holds the run lock."""


# ---------------------------------------------------------------------------
# Pass phases
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RefinePhase:
    kind: ClassVar[str] = "refine"
    order: ClassVar[int] = 0

    def __str__(self) -> str:
        return "Refine"


@dataclass(frozen=True)
class DdvRedPhase:
    kind: ClassVar[str] = "ddv_red"
    order: ClassVar[int] = 1

    def __str__(self) -> str:
        return "DDV Red"


@dataclass(frozen=True)
class BuildPhase:
    iteration: int = 1
    kind: ClassVar[str] = "build"
    order: ClassVar[int] = 2

    def __post_init__(self) -> None:
        if isinstance(self.iteration, bool) or not isinstance(self.iteration, int) or self.iteration < 1:
            raise StateError(f"build iteration must be a positive integer, got {self.iteration!r}")

    def __str__(self) -> str:
        return f"Build (iteration {self.iteration})"


@dataclass(frozen=True)
class ExecutePhase:
    kind: ClassVar[str] = "execute"
    order: ClassVar[int] = 3

    def __str__(self) -> str:
        return "Execute"


@dataclass(frozen=True)
class ValidatePhase:
    kind: ClassVar[str] = "validate"
    order: ClassVar[int] = 4

    def __str__(self) -> str:
        return "Validate"


PassPhase = Union[RefinePhase, DdvRedPhase, BuildPhase, ExecutePhase, ValidatePhase]
PASS_PHASE_TYPES: tuple[type, ...] = (RefinePhase, DdvRedPhase, BuildPhase, ExecutePhase, ValidatePhase)


# ---------------------------------------------------------------------------
# Spiral state
# ---------------------------------------------------------------------------


def _require_pass_number(value: Any, *, minimum: int, label: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise StateError(f"{label} must be an integer >= {minimum}, got {value!r}")


@dataclass(frozen=True)
class NotStarted:
    kind: ClassVar[str] = "not_started"

    def __str__(self) -> str:
        return "Not started"


@dataclass(frozen=True)
class Scoping:
    attempt: int = 1
    kind: ClassVar[str] = "scoping"

    def __post_init__(self) -> None:
        _require_pass_number(self.attempt, minimum=1, label="scoping attempt")

    def __str__(self) -> str:
        return f"Scoping (attempt {self.attempt})"


@dataclass(frozen=True)
class ScopeReview:
    kind: ClassVar[str] = "scope_review"

    def __str__(self) -> str:
        return "Scope review"


@dataclass(frozen=True)
class ScopeComplete:
    kind: ClassVar[str] = "scope_complete"

    def __str__(self) -> str:
        return "Scope complete"


@dataclass(frozen=True)
class InPass:
    pass_number: int
    phase: PassPhase
    kind: ClassVar[str] = "in_pass"

    def __post_init__(self) -> None:
        # Pass 0 belongs to scoping and has no pass phases.
        _require_pass_number(self.pass_number, minimum=1, label="pass number")
        if not isinstance(self.phase, PASS_PHASE_TYPES):
            raise StateError(f"unknown pass phase: {self.phase!r}")

    def __str__(self) -> str:
        return f"Pass {self.pass_number} - {self.phase}"


@dataclass(frozen=True)
class PassReview:
    pass_number: int
    kind: ClassVar[str] = "pass_review"

    def __post_init__(self) -> None:
        _require_pass_number(self.pass_number, minimum=1, label="pass number")

    def __str__(self) -> str:
        return f"Pass {self.pass_number} - review"


@dataclass(frozen=True)
class Complete:
    final_pass: int
    kind: ClassVar[str] = "complete"

    def __post_init__(self) -> None:
        _require_pass_number(self.final_pass, minimum=1, label="final pass")

    def __str__(self) -> str:
        return f"Complete (final pass {self.final_pass})"


SpiralState = Union[NotStarted, Scoping, ScopeReview, ScopeComplete, InPass, PassReview, Complete]


# ---------------------------------------------------------------------------
# Agent results
# ---------------------------------------------------------------------------

TOOL_READ = "Read"
TOOL_WRITE = "Write"
TOOL_EDIT = "Edit"
TOOL_BASH = "Bash"
TOOL_GLOB = "Glob"
TOOL_GREP = "Grep"
TOOL_TASK = "Task"
TOOL_OTHER = "Other"
PATH_TOOLS = (TOOL_READ, TOOL_WRITE, TOOL_EDIT)


@dataclass(frozen=True)
class ToolCall:
    """One action an agent took.

    ``value`` holds the path for Read/Write/Edit, the command for Bash, the
    pattern for Glob/Grep, the description for Task, and the tool name for
    anything else.
    """

    kind: str
    value: str = ""

    @classmethod
    def read(cls, path: str) -> "ToolCall":
        return cls(TOOL_READ, path)

    @classmethod
    def write(cls, path: str) -> "ToolCall":
        return cls(TOOL_WRITE, path)

    @classmethod
    def edit(cls, path: str) -> "ToolCall":
        return cls(TOOL_EDIT, path)

    @classmethod
    def bash(cls, command: str) -> "ToolCall":
        return cls(TOOL_BASH, command)

    @classmethod
    def glob(cls, pattern: str) -> "ToolCall":
        return cls(TOOL_GLOB, pattern)

    @classmethod
    def grep(cls, pattern: str) -> "ToolCall":
        return cls(TOOL_GREP, pattern)

    @classmethod
    def task(cls, description: str) -> "ToolCall":
        return cls(TOOL_TASK, description)

    @classmethod
    def other(cls, name: str) -> "ToolCall":
        return cls(TOOL_OTHER, name)

    @property
    def path(self) -> str | None:
        return self.value if self.kind in PATH_TOOLS else None

    @property
    def command(self) -> str | None:
        return self.value if self.kind == TOOL_BASH else None

    def __str__(self) -> str:
        if self.kind == TOOL_OTHER:
            return self.value
        if self.kind == TOOL_BASH:
            return f"Bash $ {self.value}"
        return f"{self.kind} {self.value}"


@dataclass(frozen=True)
class AgentStats:
    tool_count: int = 0
    file_writes: int = 0
    test_runs: int = 0


@dataclass(frozen=True)
class UsageInfo:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def cache_tokens(self) -> int:
        return self.cache_creation_tokens + self.cache_read_tokens


@dataclass(frozen=True)
class AgentResult:
    result_text: str
    stats: AgentStats
    elapsed_seconds: float
    tool_log: tuple[ToolCall, ...] = ()
    usage: UsageInfo = field(default_factory=UsageInfo)


@dataclass(frozen=True)
class InvocationRecord:
    phase: str
    pass_number: int
    model: str
    input_tokens: int
    output_tokens: int
    cache_creation_input_tokens: int
    cache_read_input_tokens: int
    cost_usd: float
    elapsed_seconds: float
    timestamp: str

    @property
    def cache_tokens(self) -> int:
        return self.cache_creation_input_tokens + self.cache_read_input_tokens


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelsConfig:
    scope: str
    refine: str
    ddv: str
    build: str
    execute: str
    validate: str


@dataclass(frozen=True)
class LimitsConfig:
    max_spiral_passes: int
    max_ralph_iterations: int
    stall_threshold: int
    budget_usd: float
    budget_warn_pct: float


@dataclass(frozen=True)
class ReviewConfig:
    pause: bool


@dataclass(frozen=True)
class GitConfig:
    auto_commit: bool
    auto_push: bool


@dataclass(frozen=True)
class TerminalConfig:
    collapse_output: bool


@dataclass(frozen=True)
class PathsConfig:
    lisa_root: str
    source: tuple[str, ...]
    tests_ddv: str
    tests_software: str
    tests_integration: str


@dataclass(frozen=True)
class AgentConfig:
    command: str
    extra_args: tuple[str, ...]


@dataclass(frozen=True)
class LisaConfig:
    project_name: str
    models: ModelsConfig
    limits: LimitsConfig
    review: ReviewConfig
    git: GitConfig
    terminal: TerminalConfig
    paths: PathsConfig
    commands: dict[str, str]
    agent: AgentConfig

    def source_dirs_display(self) -> str:
        return ", ".join(self.paths.source)
