"""Git worktree isolation for workers.

Each task gets ``<worktrees_dir>/<task>`` checked out on branch
``drover/<task>``. An existing worktree for that branch is reused.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .errors import DroverError
from .process import CommandResult, run_command

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "drover/"


class WorktreeManager:
    def __init__(self, repo_root: Path, worktrees_dir: Path, *, git_binary: str = "git") -> None:
        self.repo_root = Path(repo_root)
        self.worktrees_dir = Path(worktrees_dir)
        self._git_binary = git_binary

    async def _git(self, *args: str, check: bool = True) -> CommandResult:
        try:
            result = await run_command([self._git_binary, *args], cwd=self.repo_root)
        except FileNotFoundError as exc:
            raise DroverError(f"git executable '{self._git_binary}' not found") from exc
        if check and not result.ok:
            raise DroverError(f"git {args[0]} {args[1] if len(args) > 1 else ''} failed: {result.message}".strip())
        return result

    async def worktrees(self) -> dict[str, Path]:
        """Map local branch name to worktree path (``git worktree list --porcelain``)."""

        result = await self._git("worktree", "list", "--porcelain")
        mapping: dict[str, Path] = {}
        current: Path | None = None
        for line in result.stdout.splitlines():
            if line.startswith("worktree "):
                current = Path(line[len("worktree ") :])
            elif line.startswith("branch refs/heads/") and current is not None:
                mapping[line[len("branch refs/heads/") :]] = current
        return mapping

    async def branch_exists(self, branch: str) -> bool:
        result = await self._git("show-ref", "--verify", "--quiet", f"refs/heads/{branch}", check=False)
        return result.ok

    async def ensure(self, task_id: str, *, base_ref: str = "HEAD") -> Path:
        branch = f"{BRANCH_PREFIX}{task_id}"
        existing = (await self.worktrees()).get(branch)
        if existing is not None:
            return existing
        path = (self.worktrees_dir / task_id).resolve()
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        if await self.branch_exists(branch):
            await self._git("worktree", "add", str(path), branch)
        else:
            await self._git("worktree", "add", "-b", branch, str(path), base_ref)
        logger.info("Created worktree", extra={"task_id": task_id, "path": str(path), "branch": branch})
        return path

    async def remove(self, path: Path | str) -> None:
        await self._git("worktree", "remove", "--force", str(path))
        logger.info("Removed worktree", extra={"path": str(path)})


__all__ = ["BRANCH_PREFIX", "WorktreeManager"]
