from __future__ import annotations

import json
import os
import socket
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from lisa.constants import LOCK_FILENAME, STATE_FILENAME, STATE_SCHEMA_VERSION
from lisa.models import (
    BuildPhase,
    Complete,
    DdvRedPhase,
    ExecutePhase,
    InPass,
    LockError,
    NotStarted,
    PassPhase,
    PassReview,
    RefinePhase,
    ScopeComplete,
    ScopeReview,
    Scoping,
    SpiralState,
    StateError,
    ValidatePhase,
)
from lisa.utils import _parse_utc, _read_json, _utc_now, _write_json

_SIMPLE_PHASES: dict[str, type] = {
    RefinePhase.kind: RefinePhase,
    DdvRedPhase.kind: DdvRedPhase,
    ExecutePhase.kind: ExecutePhase,
    ValidatePhase.kind: ValidatePhase,
}


def _state_path(lisa_root: Path) -> Path:
    return lisa_root / STATE_FILENAME


# ---------------------------------------------------------------------------
# Payload conversion
# ---------------------------------------------------------------------------


def _phase_to_payload(phase: PassPhase) -> dict[str, Any]:
    if isinstance(phase, BuildPhase):
        return {"kind": phase.kind, "iteration": phase.iteration}
    return {"kind": phase.kind}


def _phase_from_payload(payload: Any) -> PassPhase:
    if not isinstance(payload, dict):
        raise StateError(f"pass phase must be an object, got {payload!r}")
    kind = str(payload.get("kind", "")).strip()
    if kind == BuildPhase.kind:
        return BuildPhase(iteration=_require_int(payload, "iteration"))
    phase_type = _SIMPLE_PHASES.get(kind)
    if phase_type is None:
        raise StateError(f"unknown pass phase '{kind}'")
    return phase_type()


def _require_int(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise StateError(f"state field '{key}' must be an integer, got {value!r}")
    return value


def state_to_payload(state: SpiralState) -> dict[str, Any]:
    payload: dict[str, Any] = {"kind": state.kind}
    if isinstance(state, Scoping):
        payload["attempt"] = state.attempt
    elif isinstance(state, InPass):
        payload["pass"] = state.pass_number
        payload["phase"] = _phase_to_payload(state.phase)
    elif isinstance(state, PassReview):
        payload["pass"] = state.pass_number
    elif isinstance(state, Complete):
        payload["final_pass"] = state.final_pass
    elif not isinstance(state, (NotStarted, ScopeReview, ScopeComplete)):
        raise StateError(f"cannot serialize unknown state {state!r}")
    return payload


def state_from_payload(payload: dict[str, Any]) -> SpiralState:
    kind = str(payload.get("kind", "")).strip()
    if kind == NotStarted.kind:
        return NotStarted()
    if kind == Scoping.kind:
        return Scoping(attempt=_require_int(payload, "attempt"))
    if kind == ScopeReview.kind:
        return ScopeReview()
    if kind == ScopeComplete.kind:
        return ScopeComplete()
    if kind == InPass.kind:
        return InPass(
            pass_number=_require_int(payload, "pass"),
            phase=_phase_from_payload(payload.get("phase")),
        )
    if kind == PassReview.kind:
        return PassReview(pass_number=_require_int(payload, "pass"))
    if kind == Complete.kind:
        return Complete(final_pass=_require_int(payload, "final_pass"))
    raise StateError(f"unknown spiral state '{kind}'")


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def load_state(lisa_root: Path) -> SpiralState:
    """Return the persisted spiral state, or ``NotStarted`` when none exists."""
    path = _state_path(lisa_root)
    if not path.exists():
        return NotStarted()
    payload = _read_json(path)
    state_payload = payload.get("state")
    if not isinstance(state_payload, dict):
        raise StateError(f"state file has no 'state' object: {path}")
    return state_from_payload(state_payload)


def save_state(lisa_root: Path, state: SpiralState) -> None:
    payload = {
        "schema_version": STATE_SCHEMA_VERSION,
        "state": state_to_payload(state),
        "updated_at": _utc_now(),
    }
    _write_json(_state_path(lisa_root), payload)


def completed_pass(state: SpiralState) -> int | None:
    """Return the pass whose work is finished in ``state``, if any."""
    if isinstance(state, PassReview):
        return state.pass_number
    if isinstance(state, Complete):
        return state.final_pass
    if isinstance(state, InPass):
        return state.pass_number
    return None


def scope_is_complete(state: SpiralState) -> bool:
    return isinstance(state, (ScopeComplete, InPass, PassReview, Complete))


# ---------------------------------------------------------------------------
# Run lock
# ---------------------------------------------------------------------------


def _lock_path(lisa_root: Path) -> Path:
    return lisa_root / LOCK_FILENAME


def _read_lock_payload(lock_path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def _write_lock_payload_exclusive(lock_path: Path, payload: dict[str, Any]) -> None:
    rendered = json.dumps(payload, indent=2) + "\n"
    fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(rendered)


def _acquire_lock(lisa_root: Path, *, command: str, stale_seconds: int) -> tuple[bool, str]:
    lock_path = _lock_path(lisa_root)
    now = datetime.now(timezone.utc)
    started_at = _utc_now()
    owner_uuid = uuid.uuid4().hex
    lock_payload: dict[str, Any] = {
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "owner_uuid": owner_uuid,
        "started_at": started_at,
        "last_heartbeat_at": started_at,
        "last_heartbeat_monotonic": time.monotonic(),
        "command": command,
    }
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    stale_replaced = False
    for _ in range(3):
        try:
            _write_lock_payload_exclusive(lock_path, lock_payload)
            if stale_replaced:
                return (True, f"replaced stale lock at {lock_path}")
            return (True, f"lock acquired at {lock_path}")
        except FileExistsError:
            existing = _read_lock_payload(lock_path)
            heartbeat = _parse_utc(str(existing.get("last_heartbeat_at", "")))
            if heartbeat is not None and now - heartbeat <= timedelta(seconds=stale_seconds):
                return (
                    False,
                    (
                        f"active lock exists at {lock_path} "
                        f"(pid={existing.get('pid', '<unknown>')}, "
                        f"host={existing.get('host', '<unknown>')}, "
                        f"command={existing.get('command', '<unknown>')})"
                    ),
                )
            stale_path = lock_path.with_suffix(f"{lock_path.suffix}.stale.{owner_uuid[:8]}")
            try:
                os.replace(lock_path, stale_path)
            except FileNotFoundError:
                continue
            except OSError:
                return (False, f"failed to replace stale lock at {lock_path}")
            stale_path.unlink(missing_ok=True)
            stale_replaced = True
        except OSError as exc:
            return (False, f"failed to acquire lock at {lock_path}: {exc}")
    return (False, f"failed to acquire lock at {lock_path} after retries")


def _heartbeat_lock(lisa_root: Path) -> None:
    lock_path = _lock_path(lisa_root)
    if not lock_path.exists():
        return
    payload = _read_lock_payload(lock_path)
    if not payload or payload.get("pid") != os.getpid():
        return
    payload["last_heartbeat_at"] = _utc_now()
    payload["last_heartbeat_monotonic"] = time.monotonic()
    _write_json(lock_path, payload)


def _release_lock(lisa_root: Path) -> None:
    lock_path = _lock_path(lisa_root)
    if not lock_path.exists():
        return
    payload = _read_lock_payload(lock_path)
    holder_pid = payload.get("pid", -1)
    if isinstance(holder_pid, int) and holder_pid not in {-1, os.getpid()}:
        return
    lock_path.unlink(missing_ok=True)


class RunLock:
    """Context manager around the ``.lisa/run.lock`` file."""

    def __init__(self, lisa_root: Path, *, command: str, stale_seconds: int) -> None:
        self.lisa_root = lisa_root
        self.command = command
        self.stale_seconds = stale_seconds
        self.message = ""

    def __enter__(self) -> "RunLock":
        acquired, self.message = _acquire_lock(
            self.lisa_root, command=self.command, stale_seconds=self.stale_seconds
        )
        if not acquired:
            raise LockError(self.message)
        return self

    def __exit__(self, *_exc: object) -> None:
        _release_lock(self.lisa_root)

    def heartbeat(self) -> None:
        _heartbeat_lock(self.lisa_root)
