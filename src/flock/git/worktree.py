"""Async wrapper around git branch and worktree commands."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from ..utils import sanitize_environment

logger = logging.getLogger(__name__)

_CHECKED_OUT_MARKERS = ("already checked out", "is already used by worktree")


class GitNotFoundError(RuntimeError):
    """Raised when the git executable cannot be located."""


@dataclass(slots=True)
class GitResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitCommandError(RuntimeError):
    """Raised when a git command exits non-zero."""

    def __init__(self, result: GitResult) -> None:
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
        super().__init__(f"{' '.join(result.args[1:])}: {detail}")

    @property
    def checked_out_elsewhere(self) -> bool:
        return any(marker in self.result.stderr for marker in _CHECKED_OUT_MARKERS)


@dataclass(frozen=True, slots=True)
class SyncStatus:
    ahead: int = 0
    behind: int = 0
    divergence_from_main: int = 0
    is_clean: bool = True

    @property
    def is_synced(self) -> bool:
        return self.ahead == 0 and self.behind == 0

    def as_dict(self) -> dict[str, int | bool]:
        return {
            "ahead": self.ahead,
            "behind": self.behind,
            "divergence_from_main": self.divergence_from_main,
            "is_clean": self.is_clean,
            "is_synced": self.is_synced,
        }


class WorktreeStore:
    """Create and remove per-agent branches and worktrees in one repository."""

    def __init__(
        self,
        repo_path: Path,
        *,
        worktree_dir: str = ".worktrees",
        main_branch: str = "main",
        executable: Path | None = None,
    ) -> None:
        self._repo_path = Path(repo_path)
        self._main_branch = main_branch
        self._worktree_root = self._repo_path / worktree_dir
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def repo_path(self) -> Path:
        return self._repo_path

    def checkout_path_for(self, branch: str) -> Path:
        """Return where the worktree for ``branch`` lives."""

        return self._worktree_root / branch.replace("/", "-")

    async def branch_exists(self, name: str) -> bool:
        result = await self.run("show-ref", "--verify", "--quiet", f"refs/heads/{name}")
        return result.ok

    async def create_branch(self, name: str) -> None:
        await self.check("branch", name)
        logger.info("Created branch", extra={"branch": name})

    async def create_checkout(self, branch: str, path: Path) -> Path:
        path = Path(path)
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        await self.check("worktree", "add", str(path), branch)
        logger.info("Created worktree", extra={"branch": branch, "path": str(path)})
        return path

    async def commit_all(self, path: Path, message: str) -> bool:
        """Stage everything in ``path`` and commit; return False when there was nothing to commit."""

        await self.check("add", "-A", cwd=path)
        staged = await self.run("diff", "--cached", "--quiet", cwd=path)
        if staged.ok:
            return False
        await self.check("commit", "-m", message, cwd=path)
        logger.info("Committed worktree changes", extra={"path": str(path)})
        return True

    async def has_conflicts(self, path: Path) -> bool:
        result = await self.check("diff", "--name-only", "--diff-filter=U", cwd=path)
        return bool(result.stdout.strip())

    async def remove_checkout(self, path: Path) -> None:
        path = Path(path)
        result = await self.run("worktree", "remove", "--force", str(path))
        if not result.ok:
            logger.debug("git worktree remove failed", extra={"path": str(path), "stderr": result.stderr})
        await self.run("worktree", "prune")
        if path.exists():
            await asyncio.to_thread(shutil.rmtree, path)
        logger.info("Removed worktree", extra={"path": str(path)})

    async def remove_branch(self, name: str) -> None:
        await self.check("branch", "-D", name)
        logger.info("Deleted branch", extra={"branch": name})

    async def sync_status(self, path: Path) -> SyncStatus:
        """Report how the checkout at ``path`` relates to its upstream and to the main branch."""

        ahead = behind = 0
        upstream = await self.run("rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}", cwd=path)
        if upstream.ok:
            counts = await self.check("rev-list", "--left-right", "--count", "HEAD...@{u}", cwd=path)
            ahead, behind = (int(value) for value in counts.stdout.split())

        divergence = 0
        for ref in (f"refs/heads/{self._main_branch}", f"refs/remotes/origin/{self._main_branch}"):
            if (await self.run("rev-parse", "--verify", "--quiet", ref, cwd=path)).ok:
                counted = await self.check("rev-list", "--count", f"{ref}..HEAD", cwd=path)
                divergence = int(counted.stdout.strip() or 0)
                break

        status = await self.check("status", "--porcelain", "--untracked-files=all", cwd=path)
        return SyncStatus(
            ahead=ahead,
            behind=behind,
            divergence_from_main=divergence,
            is_clean=not status.stdout.strip(),
        )

    async def check(self, *args: str, cwd: Path | None = None) -> GitResult:
        result = await self.run(*args, cwd=cwd)
        if not result.ok:
            raise GitCommandError(result)
        return result

    async def run(self, *args: str, cwd: Path | None = None) -> GitResult:
        cmd = [str(self._executable_path), "-C", str(cwd or self._repo_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return GitResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


__all__ = ["GitCommandError", "GitNotFoundError", "GitResult", "SyncStatus", "WorktreeStore"]
