"""Lisa constants: phase definitions, file layout, patterns, and defaults."""

from __future__ import annotations

import re

CONFIG_FILENAME = "lisa.yaml"
DEFAULT_LISA_ROOT = ".lisa"

STATE_FILENAME = "state.json"
USAGE_FILENAME = "usage.json"
LAST_ERROR_FILENAME = "last-error.md"
LOCK_FILENAME = "run.lock"
LOG_RELATIVE_PATH = "logs/orchestrator.log"
PLAN_RELATIVE_PATH = "methodology/plan.md"
SPIRAL_DIRNAME = "spiral"
PASS_COMPLETE_FILENAME = "PASS_COMPLETE.md"
SPIRAL_COMPLETE_FILENAME = "SPIRAL_COMPLETE.md"
SCOPE_FEEDBACK_FILENAME = "scope-feedback.md"
HUMAN_REDIRECT_FILENAME = "human-redirect.md"
REVIEW_PACKAGE_FILENAME = "review-package.md"
ENVIRONMENT_RESOLUTION_FILENAME = "environment-resolution.md"

# Paths under the lisa root that only exist for the running process.
RUNTIME_IGNORE_ENTRIES = (LOCK_FILENAME, "logs/", LAST_ERROR_FILENAME, "*.tmp")
RUNTIME_STATE_PATHS = (STATE_FILENAME, LOCK_FILENAME, "logs", LAST_ERROR_FILENAME)

STATE_SCHEMA_VERSION = 1
USAGE_SCHEMA_VERSION = 1

PASS_TAG_PREFIX = "pass-"
PASS_TAG_PATTERN = re.compile(r"^pass-(\d+)$")
BACKUP_BRANCH_PREFIX = "lisa/backup/rollback-"

# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------

PHASE_SCOPE = "scope"
PHASE_REFINE = "refine"
PHASE_DDV_RED = "ddv_red"
PHASE_BUILD = "build"
PHASE_EXECUTE = "execute"
PHASE_VALIDATE = "validate"
PHASE_FINALIZE = "finalize"

AGENT_PHASES = (
    PHASE_SCOPE,
    PHASE_REFINE,
    PHASE_DDV_RED,
    PHASE_BUILD,
    PHASE_EXECUTE,
    PHASE_VALIDATE,
    PHASE_FINALIZE,
)
PASS_PHASE_ORDER = (PHASE_REFINE, PHASE_DDV_RED, PHASE_BUILD, PHASE_EXECUTE, PHASE_VALIDATE)

PHASE_DISPLAY_NAMES = {
    PHASE_SCOPE: "Scope",
    PHASE_REFINE: "Refine",
    PHASE_DDV_RED: "DDV Red",
    PHASE_BUILD: "Build",
    PHASE_EXECUTE: "Execute",
    PHASE_VALIDATE: "Validate",
    PHASE_FINALIZE: "Finalize",
}

# Finalize shares the validate model.
PHASE_MODEL_KEYS = {
    PHASE_SCOPE: "scope",
    PHASE_REFINE: "refine",
    PHASE_DDV_RED: "ddv",
    PHASE_BUILD: "build",
    PHASE_EXECUTE: "execute",
    PHASE_VALIDATE: "validate",
    PHASE_FINALIZE: "validate",
}

PROMPT_TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")

# ---------------------------------------------------------------------------
# Plan document grammar
# ---------------------------------------------------------------------------

TASK_STATUS_TODO = "TODO"
TASK_STATUS_IN_PROGRESS = "IN_PROGRESS"
TASK_STATUS_DONE = "DONE"
TASK_STATUS_BLOCKED = "BLOCKED"
TASK_STATUSES = (
    TASK_STATUS_TODO,
    TASK_STATUS_IN_PROGRESS,
    TASK_STATUS_DONE,
    TASK_STATUS_BLOCKED,
)
TASK_OPEN_STATUSES = (TASK_STATUS_TODO, TASK_STATUS_IN_PROGRESS)
TASK_HEADING_PATTERN = re.compile(r"^#{2,4}\s+Task\s+\d", re.IGNORECASE)
TASK_STATUS_PATTERN = re.compile(r"\*\*Status:\*\*\s+(\w+)")
TASK_PASS_PATTERN = re.compile(r"\*\*Pass:\*\*\s*(\d+)")
DEFAULT_TASK_PASS = 1

# ---------------------------------------------------------------------------
# Review decisions
# ---------------------------------------------------------------------------

SCOPE_APPROVE = "approve"
SCOPE_REFINE = "refine"
SCOPE_EDIT = "edit"
SCOPE_QUIT = "quit"

REVIEW_ACCEPT = "accept"
REVIEW_CONTINUE = "continue"
REVIEW_REDIRECT = "redirect"

BLOCK_FIX = "fix"
BLOCK_SKIP = "skip"
BLOCK_ABORT = "abort"

ENVIRONMENT_FIX = "fix"
ENVIRONMENT_SKIP = "skip"
ENVIRONMENT_PROCEED = "proceed"

SCOPE_FEEDBACK_TEMPLATE = (
    "# Scope Feedback\n\n"
    "## Acceptance Criteria Issues\n-\n\n"
    "## Methodology Issues\n-\n\n"
    "## Scope Progression Issues\n-\n\n"
    "## Validation Issues\n-\n\n"
    "## Other\n-\n"
)

SCOPE_REFINEMENT_CONTEXT = (
    "SCOPE REFINEMENT: The human has reviewed your scope artifacts and provided feedback.\n"
    "Read spiral/pass-0/scope-feedback.md carefully and update all affected artifacts.\n"
    "Do not discard previous work; refine it based on the feedback."
)

HUMAN_REDIRECT_TEMPLATE = (
    "# Human Redirect - Pass {pass_number}\n\n"
    "<!-- Write your guidance for the next pass below. Save and close when done. -->\n"
    "<!-- Delete this comment block. -->\n\n"
)

# ---------------------------------------------------------------------------
# Config defaults
# ---------------------------------------------------------------------------

DEFAULT_STRONG_MODEL = "opus"
DEFAULT_FAST_MODEL = "sonnet"
DEFAULT_MAX_SPIRAL_PASSES = 5
DEFAULT_MAX_RALPH_ITERATIONS = 50
DEFAULT_STALL_THRESHOLD = 2
DEFAULT_BUDGET_USD = 0.0
DEFAULT_BUDGET_WARN_PCT = 80
DEFAULT_SOURCE_DIRS = ("src",)
DEFAULT_TESTS_DDV = "tests/ddv"
DEFAULT_TESTS_SOFTWARE = "tests/software"
DEFAULT_TESTS_INTEGRATION = "tests/integration"
DEFAULT_AGENT_COMMAND = "claude"
COMMAND_KEYS = (
    "setup",
    "build",
    "test_all",
    "test_ddv",
    "test_software",
    "test_integration",
    "lint",
)

# ---------------------------------------------------------------------------
# Agent runner
# ---------------------------------------------------------------------------

AGENT_BASE_ARGS = (
    "-p",
    "--dangerously-skip-permissions",
    "--verbose",
)
AGENT_ERROR_TAIL_CALLS = 20
AGENT_STDERR_TAIL_LINES = 40
AGENT_TERMINATE_GRACE_SECONDS = 5
STATUS_TICK_SECONDS = 0.5
TOOL_DETAIL_LIMIT = 80
THINKING_PREVIEW_LIMIT = 200

LOCK_STALE_SECONDS = 6 * 60 * 60
