"""Publishing generated files to the shared gallery repository.

The repository is shared with other writers (editors, other deployments),
so a push can be rejected because the remote moved on. Jobs only write
disjoint asset ids and paths, so a rebase onto the new remote head is
enough to resolve ordering; content conflicts are treated as failures.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol

from photolessons.errors import PublishError, PushRejected, TransientExternalError

logger = logging.getLogger(__name__)

METADATA_FILE = "gallery-metadata.json"
INDEX_FILE = "ngss-index.json"


class VersionedRepository(Protocol):
    def clone(self, destination: Path, sparse_paths: Iterable[str]) -> None: ...

    def add(self, worktree: Path) -> None: ...

    def commit(self, worktree: Path, message: str) -> bool: ...

    def push(self, worktree: Path) -> None: ...

    def fetch(self, worktree: Path) -> None: ...

    def rebase(self, worktree: Path) -> None: ...

    def amend(self, worktree: Path) -> bool: ...


def _redact(text: str) -> str:
    """Hide credentials embedded in remote URLs."""

    return re.sub(r"://[^@/\s]+@", "://***@", text)


def _run_git(args: list[str], cwd: Path | None = None, timeout: int = 120) -> subprocess.CompletedProcess:
    """Run a git command with logging and a timeout."""

    logger.info(
        "Running git",
        extra={
            "event": "git_command_start",
            "context": {"command": _redact(" ".join(args)), "timeout_seconds": timeout},
        },
    )
    try:
        return subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise TransientExternalError(f"git {args[0]} could not run: {exc}") from exc


def _check(result: subprocess.CompletedProcess, action: str) -> None:
    if result.returncode != 0:
        raise TransientExternalError(
            f"git {action} failed ({result.returncode}): {_redact(result.stderr.strip())}"
        )


class GitRepository:
    """Versioned repository primitives backed by the git CLI."""

    def __init__(
        self,
        url: str,
        branch: str = "main",
        user_name: str = "Photolessons Automation",
        user_email: str = "automation@photolessons.local",
    ) -> None:
        self.url = url
        self.branch = branch
        self.user_name = user_name
        self.user_email = user_email

    def clone(self, destination: Path, sparse_paths: Iterable[str]) -> None:
        result = _run_git(
            [
                "clone",
                "--depth",
                "1",
                "--filter=blob:none",
                "--sparse",
                "--branch",
                self.branch,
                self.url,
                str(destination),
            ],
            timeout=300,
        )
        _check(result, "clone")
        _check(_run_git(["config", "user.name", self.user_name], cwd=destination), "config")
        _check(_run_git(["config", "user.email", self.user_email], cwd=destination), "config")
        _check(
            _run_git(["sparse-checkout", "set", "--no-cone", *sparse_paths], cwd=destination),
            "sparse-checkout",
        )

    def add(self, worktree: Path) -> None:
        _check(_run_git(["add", "-A"], cwd=worktree), "add")

    def commit(self, worktree: Path, message: str) -> bool:
        status = _run_git(["status", "--porcelain"], cwd=worktree)
        _check(status, "status")
        if not status.stdout.strip():
            return False
        _check(_run_git(["commit", "-m", message], cwd=worktree), "commit")
        return True

    def push(self, worktree: Path) -> None:
        result = _run_git(["push", "origin", f"HEAD:{self.branch}"], cwd=worktree, timeout=300)
        if result.returncode != 0:
            raise PushRejected(_redact(result.stderr.strip()) or "push rejected")

    def fetch(self, worktree: Path) -> None:
        _check(_run_git(["fetch", "origin", self.branch], cwd=worktree, timeout=300), "fetch")

    def rebase(self, worktree: Path) -> None:
        result = _run_git(["rebase", f"origin/{self.branch}"], cwd=worktree)
        if result.returncode != 0:
            _run_git(["rebase", "--abort"], cwd=worktree)
            _check(result, "rebase")

    def amend(self, worktree: Path) -> bool:
        status = _run_git(["status", "--porcelain"], cwd=worktree)
        _check(status, "status")
        if not status.stdout.strip():
            return False
        _check(_run_git(["commit", "--amend", "--no-edit"], cwd=worktree), "commit --amend")
        return True


@dataclass
class WorkingCopy:
    """A minimal checkout of the paths one job touches."""

    path: Path
    sparse_paths: tuple[str, ...]
    changed: set[str] = field(default_factory=set)
    committed: bool = False

    def file(self, relative: str) -> Path:
        return self.path / relative

    def read_json(self, relative: str, default: Any = None) -> Any:
        target = self.file(relative)
        if not target.exists():
            return default
        return json.loads(target.read_text(encoding="utf-8"))

    def read_text(self, relative: str) -> str | None:
        target = self.file(relative)
        if not target.exists():
            return None
        return target.read_text(encoding="utf-8")


class RepositoryPublisher:
    """Acquire, mutate, commit and publish against a versioned repository."""

    def __init__(
        self,
        repository: VersionedRepository,
        work_dir: Path,
        push_retries: int = 2,
    ) -> None:
        self.repository = repository
        self.work_dir = Path(work_dir)
        self.push_retries = push_retries

    def acquire(self, sparse_paths: Iterable[str]) -> WorkingCopy:
        paths = tuple(sparse_paths)
        destination = self.work_dir / "gallery-repo"
        # Leftovers from a crashed attempt are discarded.
        shutil.rmtree(destination, ignore_errors=True)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.repository.clone(destination, paths)
        logger.info(
            "Working copy acquired",
            extra={
                "event": "working_copy_acquired",
                "context": {"path": str(destination), "sparse_paths": list(paths)},
            },
        )
        return WorkingCopy(path=destination, sparse_paths=paths)

    def mutate(self, working_copy: WorkingCopy, changes: Mapping[str, Any]) -> None:
        """Apply file changes.

        Values may be str, bytes, None (delete) or anything JSON-serializable.
        """

        for relative, value in changes.items():
            target = working_copy.file(relative)
            if value is None:
                if target.exists():
                    target.unlink()
                working_copy.changed.add(relative)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(value, bytes):
                target.write_bytes(value)
            elif isinstance(value, str):
                target.write_text(value, encoding="utf-8")
            else:
                target.write_text(
                    json.dumps(value, indent=2, ensure_ascii=False), encoding="utf-8"
                )
            working_copy.changed.add(relative)

    def commit(self, working_copy: WorkingCopy, message: str) -> bool:
        self.repository.add(working_copy.path)
        working_copy.committed = self.repository.commit(working_copy.path, message)
        if not working_copy.committed:
            logger.info(
                "Nothing to commit",
                extra={"event": "commit_skipped", "context": {"path": str(working_copy.path)}},
            )
        return working_copy.committed

    def publish(
        self,
        working_copy: WorkingCopy,
        refresh: Callable[[WorkingCopy], Any] | None = None,
    ) -> None:
        """Push, resolving a moved remote by fetch + rebase.

        After each rebase ``refresh`` is called with the rebased working
        copy so derived files can be regenerated; any change it makes is
        folded into the pending commit. Raises PublishError once the retry
        budget is spent.
        """

        if not working_copy.committed:
            return
        for attempt in range(self.push_retries + 1):
            try:
                self.repository.push(working_copy.path)
            except PushRejected as exc:
                if attempt >= self.push_retries:
                    raise PublishError(
                        f"Push failed after {attempt + 1} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "Push rejected, rebasing onto remote",
                    extra={
                        "event": "push_rejected",
                        "context": {
                            "attempt": attempt + 1,
                            "max_attempts": self.push_retries + 1,
                            "error": str(exc),
                        },
                    },
                )
                try:
                    self.repository.fetch(working_copy.path)
                    self.repository.rebase(working_copy.path)
                except TransientExternalError as rebase_exc:
                    raise PublishError(f"Rebase onto remote failed: {rebase_exc}") from rebase_exc
                if refresh is not None:
                    self._refresh(working_copy, refresh)
                continue
            logger.info(
                "Published to gallery repository",
                extra={
                    "event": "publish_complete",
                    "context": {"attempts": attempt + 1, "files": sorted(working_copy.changed)},
                },
            )
            return

    def _refresh(
        self, working_copy: WorkingCopy, refresh: Callable[[WorkingCopy], Any]
    ) -> None:
        refresh(working_copy)
        self.repository.add(working_copy.path)
        try:
            amended = self.repository.amend(working_copy.path)
        except TransientExternalError as exc:
            raise PublishError(f"Refreshing rebased commit failed: {exc}") from exc
        logger.info(
            "Rebased commit refreshed",
            extra={"event": "commit_refreshed", "context": {"amended": amended}},
        )

    def release(self, working_copy: WorkingCopy) -> None:
        shutil.rmtree(working_copy.path, ignore_errors=True)
