"""Worker lifecycle: spawn, resume, split, close and kill."""

from __future__ import annotations

import logging
import shlex
from pathlib import Path

from .errors import BackendError, ConflictError, DroverError, NotFoundError, TrackerError
from .registry import TerminalRef, Worker, WorkerRegistry
from .tasks import TaskTracker
from .terminal.models import PaneInfo, TerminalBackend
from .worktrees import WorktreeManager

logger = logging.getLogger(__name__)


class WorkerSpawner:
    """Create workers in detached windows and keep the registry in step with the backend."""

    def __init__(
        self,
        backend: TerminalBackend,
        registry: WorkerRegistry,
        *,
        repo_root: Path,
        session_name: str = "drover",
        agent_command: str = "claude",
        worktrees: WorktreeManager | None = None,
        tracker: TaskTracker | None = None,
    ) -> None:
        self._backend = backend
        self._registry = registry
        self._repo_root = Path(repo_root)
        self._session_name = session_name
        self._agent_command = agent_command
        self._worktrees = worktrees
        self._tracker = tracker

    async def _ensure_session(self) -> str:
        for session in await self._backend.list_sessions():
            if session.name == self._session_name:
                return session.id
        session = await self._backend.create_session(self._session_name, cwd=self._repo_root)
        logger.info("Created session", extra={"session": self._session_name, "session_id": session.id})
        return session.id

    def launch_command(self, worker_id: str, *, profile: str | None = None, prompt: str | None = None) -> str:
        parts = [f"DROVER_WORKER_ID={shlex.quote(worker_id)}"]
        if profile:
            parts.append(f"DROVER_PROFILE={shlex.quote(profile)}")
        parts.append(self._agent_command)
        if prompt:
            parts.append(shlex.quote(prompt))
        return " ".join(parts)

    async def spawn(
        self,
        task_id: str,
        *,
        role: str = "main",
        worker_id: str | None = None,
        profile: str | None = None,
        auto_approve: bool = True,
        prompt: str | None = None,
    ) -> Worker:
        """Open a detached window for ``task_id``, start the agent in it and register the worker."""

        worker_id = worker_id or self._registry.generate_worker_id(task_id, role)
        if self._registry.get(worker_id) is not None:
            raise ConflictError(
                f"Worker '{worker_id}' is already registered",
                hint=f"run `drover close {worker_id}` first or pass another id",
            )

        cwd = self._repo_root
        worktree: Path | None = None
        if self._worktrees is not None:
            worktree = await self._worktrees.ensure(task_id)
            cwd = worktree

        session_id = await self._ensure_session()
        window, pane = await self._backend.create_window(session_id, name=worker_id, cwd=cwd)
        worker = Worker(
            id=worker_id,
            task_id=task_id,
            role=role,
            address=TerminalRef(
                session_id=pane.session_id,
                session_name=pane.session_name or self._session_name,
                window_id=window.id,
                pane_id=pane.id,
            ),
            worktree_path=str(worktree) if worktree is not None else None,
            repo_path=str(self._repo_root),
            profile=profile,
            auto_approve_enabled=auto_approve,
        )
        registered = False
        try:
            self._registry.register(worker)
            registered = True
            await self._backend.send_keys(pane.id, self.launch_command(worker_id, profile=profile, prompt=prompt))
        except (DroverError, OSError):
            if registered:
                self._registry.remove(worker_id)
            await self._discard_window(window.id)
            raise

        if self._tracker is not None:
            try:
                await self._tracker.update_status(task_id, "in_progress")
            except TrackerError as exc:
                logger.warning("Could not claim task", extra={"task_id": task_id, "error": str(exc)})

        logger.info(
            "Spawned worker",
            extra={"worker_id": worker_id, "task_id": task_id, "pane_id": pane.id, "window_id": window.id},
        )
        return worker

    async def _discard_window(self, window_id: str) -> None:
        try:
            await self._backend.kill_window(window_id)
        except BackendError as exc:
            logger.warning("Could not remove window", extra={"window_id": window_id, "error": str(exc)})

    async def next_task(self) -> str:
        if self._tracker is None:
            raise NotFoundError("No task tracker configured", hint="set DROVER_TRACKER or pass a task id")
        ready = await self._tracker.list_ready()
        if not ready:
            raise NotFoundError("No ready tasks", hint="create a task in the tracker or pass a task id")
        return ready[0]

    async def work(self, task_or_next: str, **options) -> tuple[Worker, bool]:
        """Return a live worker for the task, spawning one when none exists.

        The boolean is True when a new worker was spawned.
        """

        task_id = await self.next_task() if task_or_next == "next" else task_or_next
        for worker in self._registry.find_by_task(task_id):
            if await self._backend.describe_pane(worker.address.pane_id) is not None:
                logger.info("Resuming worker", extra={"worker_id": worker.id, "task_id": task_id})
                return worker, False
        return await self.spawn(task_id, **options), True

    async def split(self, worker_id: str, *, command: str | None = None) -> PaneInfo:
        worker = self._registry.require(worker_id)
        cwd = Path(worker.worktree_path) if worker.worktree_path else self._repo_root
        pane = await self._backend.create_pane(worker.address.window_id, cwd=cwd)
        self._registry.add_subpane(worker_id, pane.id)
        if command:
            await self._backend.send_keys(pane.id, command)
        return pane

    async def close(
        self,
        worker_id: str,
        *,
        keep_worktree: bool = True,
        complete_task: bool = False,
    ) -> Worker:
        """Terminate the worker's window and drop it from the registry."""

        worker = self._registry.require(worker_id)
        await self._discard_window(worker.address.window_id)
        if not keep_worktree and worker.worktree_path and self._worktrees is not None:
            try:
                await self._worktrees.remove(worker.worktree_path)
            except DroverError as exc:
                logger.warning("Could not remove worktree", extra={"worker_id": worker_id, "error": str(exc)})
        self._registry.remove(worker_id)
        if complete_task and self._tracker is not None:
            await self._tracker.update_status(worker.task_id, "done")
        logger.info("Closed worker", extra={"worker_id": worker_id, "task_id": worker.task_id})
        return worker

    async def kill(self, worker_id: str) -> Worker:
        """Kill the worker's panes and forget it; worktree and task are left alone."""

        worker = self._registry.require(worker_id)
        for pane_id in reversed(worker.pane_ids):
            try:
                await self._backend.kill_pane(pane_id)
            except BackendError:
                logger.debug("Pane already gone", extra={"pane_id": pane_id})
        self._registry.remove(worker_id)
        logger.info("Killed worker", extra={"worker_id": worker_id})
        return worker


__all__ = ["WorkerSpawner"]
