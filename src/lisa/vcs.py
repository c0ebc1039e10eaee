"""Git adapter: the handful of primitives the orchestrator needs."""

from __future__ import annotations

import subprocess
from pathlib import Path

from lisa import terminal
from lisa.constants import PASS_TAG_PATTERN
from lisa.models import GitError
from lisa.utils import (
    _append_log,
    _compact_log_text,
    _git_output_lines,
    _path_fingerprint,
    _run_git,
)


def _status_entries(proc: subprocess.CompletedProcess[str]) -> list[tuple[str, str]]:
    if proc.returncode != 0:
        return []
    entries: list[tuple[str, str]] = []
    for raw_line in proc.stdout.splitlines():
        line = raw_line.rstrip("\n")
        if len(line) < 4:
            continue
        status_code = line[:2]
        payload = line[3:].strip()
        if " -> " in payload:
            payload = payload.split(" -> ", 1)[1].strip()
        if payload.startswith('"') and payload.endswith('"'):
            payload = payload[1:-1]
        if payload:
            entries.append((payload, status_code))
    return entries


def _path_is_under(path: str, prefixes: tuple[str, ...]) -> bool:
    for prefix in prefixes:
        normalized = prefix.strip("/")
        if not normalized:
            continue
        if path == normalized or path.startswith(f"{normalized}/"):
            return True
    return False


class GitRepository:
    def __init__(
        self,
        root: Path,
        *,
        auto_commit: bool = True,
        auto_push: bool = False,
        log_root: Path | None = None,
    ) -> None:
        self.root = root
        self.auto_commit = auto_commit
        self.auto_push = auto_push
        self.log_root = log_root

    def _git(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        return _run_git(self.root, args)

    def _check(self, args: list[str], *, action: str) -> subprocess.CompletedProcess[str]:
        proc = self._git(args)
        if proc.returncode != 0:
            detail = _compact_log_text(proc.stderr or proc.stdout or f"exit {proc.returncode}")
            raise GitError(f"git {action} failed: {detail}")
        return proc

    def _log(self, message: str) -> None:
        if self.log_root is not None:
            _append_log(self.log_root, message)

    # -- queries -----------------------------------------------------------

    def is_git_repo(self) -> bool:
        check = self._git(["rev-parse", "--is-inside-work-tree"])
        return check.returncode == 0 and check.stdout.strip() == "true"

    def current_branch(self) -> str:
        proc = self._check(["rev-parse", "--abbrev-ref", "HEAD"], action="rev-parse")
        return proc.stdout.strip()

    def head_commit(self) -> str:
        proc = self._git(["rev-parse", "HEAD"])
        return proc.stdout.strip() if proc.returncode == 0 else ""

    def tag_exists(self, name: str) -> bool:
        proc = self._git(["rev-parse", "-q", "--verify", f"refs/tags/{name}"])
        return proc.returncode == 0

    def list_pass_tags(self) -> list[int]:
        passes: set[int] = set()
        for line in _git_output_lines(self._git(["tag", "--list"])):
            match = PASS_TAG_PATTERN.match(line)
            if match:
                passes.add(int(match.group(1)))
        return sorted(passes)

    def has_uncommitted_changes(self, ignore_paths: tuple[str, ...] = ()) -> bool:
        proc = self._check(["status", "--porcelain", "--untracked-files=all"], action="status")
        for path, _status_code in _status_entries(proc):
            if not _path_is_under(path, ignore_paths):
                return True
        return False

    def path_modified(self, path: str) -> bool:
        unstaged = self._check(["diff", "--name-only", "--", path], action="diff")
        if unstaged.stdout.strip():
            return True
        staged = self._check(["diff", "--cached", "--name-only", "--", path], action="diff --cached")
        return bool(staged.stdout.strip())

    def modified_files(self, path: str) -> list[str]:
        files: list[str] = []
        for args in (["diff", "--name-only", "--", path], ["diff", "--cached", "--name-only", "--", path]):
            for line in _git_output_lines(self._git(args)):
                if line not in files:
                    files.append(line)
        return files

    def untracked_files(self, path: str) -> list[str]:
        proc = self._check(
            ["ls-files", "--others", "--exclude-standard", "--", path], action="ls-files"
        )
        return [line for line in proc.stdout.splitlines() if line.strip()]

    def show_file_at_ref(self, ref: str, path: str) -> str | None:
        proc = self._git(["show", f"{ref}:{path}"])
        if proc.returncode != 0:
            return None
        return proc.stdout

    def source_changed_in_last_commit(self, source_dirs: tuple[str, ...]) -> bool:
        proc = self._git(["diff", "--name-only", "HEAD~1", "HEAD", "--", *source_dirs])
        if proc.returncode != 0:
            # No parent commit yet.
            return False
        return bool(proc.stdout.strip())

    def source_snapshot(self, source_dirs: tuple[str, ...]) -> dict[str, str]:
        proc = self._git(["status", "--porcelain", "--untracked-files=all", "--", *source_dirs])
        return {
            path: f"{status_code}:{_path_fingerprint(self.root, path)}"
            for path, status_code in _status_entries(proc)
        }

    # -- mutations ---------------------------------------------------------

    def commit_all(self, message: str) -> bool:
        if not self.auto_commit:
            terminal.log_info("Skipping commit (auto_commit = false)")
            return False
        self._check(["add", "-A"], action="add")
        staged = self._git(["diff", "--cached", "--quiet"])
        if staged.returncode == 0:
            terminal.log_info("No changes to commit.")
            return False
        self._check(["commit", "-q", "-m", message], action="commit")
        commit_id = self.head_commit()[:12]
        terminal.log_success(f"Committed {commit_id}: {message}")
        self._log(f"commit {commit_id}: {message}")
        return True

    def push(self) -> None:
        if not self.auto_push:
            terminal.log_info("Skipping push (auto_push = false)")
            return
        branch = self.current_branch()
        terminal.log_info(f"Pushing to origin/{branch}...")
        proc = self._git(["push", "-u", "origin", branch])
        if proc.returncode != 0:
            detail = _compact_log_text(proc.stderr or proc.stdout)
            raise GitError(
                f"git push to origin/{branch} failed: {detail}. "
                "Check remote access and run `lisa resume`."
            )
        self._log(f"push origin/{branch}")

    def create_tag(self, name: str) -> None:
        # Re-running a pass after resume or rollback moves its tag.
        self._check(["tag", "-f", name], action=f"tag {name}")
        self._log(f"tag {name} -> {self.head_commit()[:12]}")

    def create_branch(self, name: str) -> None:
        self._check(["branch", name], action=f"branch {name}")
        self._log(f"branch {name} -> {self.head_commit()[:12]}")

    def reset_hard(self, ref: str) -> None:
        self._check(["reset", "-q", "--hard", ref], action=f"reset --hard {ref}")
        self._log(f"reset --hard {ref}")

    def revert_path(self, path: str) -> None:
        self._check(["reset", "-q", "HEAD", "--", path], action=f"reset {path}")
        tracked = self._git(["ls-files", "--", path])
        if tracked.returncode == 0 and tracked.stdout.strip():
            self._check(["checkout", "--", path], action=f"checkout {path}")
        self._log(f"revert {path}")
