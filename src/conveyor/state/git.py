from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from conveyor.state.backlog import ConveyorStateError, TaskRecord

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommitResult:
    success: bool
    committed: bool
    message: str


def commit_message(task: TaskRecord) -> str:
    return f"[{task.id}] {task.title}"


class GitCommitter:
    def __init__(
        self,
        repo_root: Path,
        *,
        git_binary: str = "git",
        env: dict[str, str] | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.git_binary = git_binary
        self.env = env
        self.timeout_seconds = timeout_seconds

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                [self.git_binary, "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                env=self.env,
                timeout=self.timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ConveyorStateError(f"git {args[0]} failed: {exc}") from exc
        if check and proc.returncode != 0:
            raise ConveyorStateError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def is_repo(self) -> bool:
        try:
            proc = self._run_git(["rev-parse", "--git-dir"], check=False)
        except ConveyorStateError:
            return False
        return proc.returncode == 0

    def commit_all(self, message: str) -> CommitResult:
        try:
            if not self.is_repo():
                self._run_git(["init"])
                logger.info("Initialized git repository in %s", self.repo_root)
            self._run_git(["add", "-A"])
            staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
            if staged.returncode == 0:
                return CommitResult(success=True, committed=False, message="No changes to commit")
            self._run_git(["commit", "-m", message])
        except ConveyorStateError as exc:
            logger.warning("Commit %r failed: %s", message, exc)
            return CommitResult(success=False, committed=False, message=str(exc))
        return CommitResult(success=True, committed=True, message=f"Committed: {message}")

    def log(self, limit: int = 50) -> str:
        try:
            proc = self._run_git(["log", "--oneline", "-n", str(limit)], check=False)
        except ConveyorStateError:
            return ""
        if proc.returncode != 0:
            return ""
        return proc.stdout.strip()
