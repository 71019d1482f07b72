"""Bounded-concurrency spawning of workers for a queue of tasks.

The coordinator holds no state between calls: each ``advance`` loads the
batch file, inspects running members, fills free slots in FIFO order and
writes the batch back after every member transition. Any process can
therefore pick a batch up where another left it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import datetime
from typing import Awaitable, Callable, Sequence

from ..detection import CompletionDetector, CompletionState
from ..errors import DroverError, TrackerError
from ..registry import Worker, WorkerRegistry
from ..spawner import WorkerSpawner
from ..tasks import DONE_STATUSES, TaskTracker
from ..terminal.models import TerminalBackend
from .models import Batch, BatchMember, MemberStatus, utcnow
from .store import BatchStore

logger = logging.getLogger(__name__)


def default_prompt(task_id: str) -> str:
    return f"Work on task {task_id}."


class BatchCoordinator:
    """Spawn, supervise and cancel groups of workers."""

    def __init__(
        self,
        store: BatchStore,
        spawner: WorkerSpawner,
        registry: WorkerRegistry,
        backend: TerminalBackend,
        detector: CompletionDetector,
        *,
        tracker: TaskTracker | None = None,
        idle_grace: float = 5.0,
        prompt_factory: Callable[[str], str] = default_prompt,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._spawner = spawner
        self._registry = registry
        self._backend = backend
        self._detector = detector
        self._tracker = tracker
        self._idle_grace = idle_grace
        self._prompt_factory = prompt_factory
        self._sleep = sleep
        self._now = now

    async def spawn_batch(
        self,
        task_ids: Sequence[str],
        max_concurrency: int,
        *,
        failure_threshold: int | None = None,
    ) -> Batch:
        """Persist a new batch and start its first ``max_concurrency`` members."""

        if not task_ids:
            raise DroverError("A batch needs at least one task id")
        if max_concurrency < 1:
            raise DroverError("max_concurrency must be >= 1")
        unique = list(dict.fromkeys(task_ids))
        batch = Batch(
            id=self._store.next_id(),
            members=[BatchMember(task_id=task_id) for task_id in unique],
            max_concurrency=max_concurrency,
            failure_threshold=failure_threshold,
        )
        batch.refresh_status()
        self._store.save(batch)
        logger.info(
            "Created batch",
            extra={"batch_id": batch.id, "tasks": unique, "max_concurrency": max_concurrency},
        )
        return await self.advance(batch.id)

    async def advance(self, batch_id: str) -> Batch:
        """One scheduling tick: retire finished members, then fill free slots."""

        batch = self._store.load(batch_id)
        if batch.terminal:
            return batch

        for member in batch.members:
            if member.status is MemberStatus.RUNNING and await self._check_member(member):
                self._save(batch)
                await asyncio.sleep(0)

        if not batch.cancelled:
            self._trip_breaker(batch)
            for member in batch.members:
                if member.status is not MemberStatus.QUEUED:
                    continue
                if batch.count(MemberStatus.SPAWNING, MemberStatus.RUNNING) >= batch.max_concurrency:
                    break
                await self._spawn_member(batch, member)
                await asyncio.sleep(0)
                if self._trip_breaker(batch):
                    break

        self._save(batch)
        return batch

    async def run(
        self,
        batch_id: str,
        *,
        poll_interval: float = 1.0,
        timeout: float | None = None,
    ) -> Batch:
        """Advance on an interval until the batch is terminal or ``timeout`` elapses."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while True:
            batch = await self.advance(batch_id)
            if batch.terminal:
                return batch
            if deadline is not None and loop.time() >= deadline:
                logger.info("Stopped waiting for batch", extra={"batch_id": batch_id, "status": batch.status.value})
                return batch
            await self._sleep(poll_interval)

    async def cancel(self, batch_id: str, *, keep_worktree: bool = True) -> Batch:
        """Close every running member's worker and cancel everything still queued."""

        batch = self._store.load(batch_id)
        if batch.terminal:
            return batch
        for member in batch.members:
            if member.status in (MemberStatus.SPAWNING, MemberStatus.RUNNING):
                if member.worker_id:
                    try:
                        worker = await self._spawner.close(member.worker_id, keep_worktree=keep_worktree)
                    except DroverError as exc:
                        logger.warning(
                            "Could not close worker while cancelling",
                            extra={"batch_id": batch_id, "worker_id": member.worker_id, "error": str(exc)},
                        )
                    else:
                        for pane_id in worker.pane_ids:
                            self._detector.reset(pane_id)
                self._finish(member, MemberStatus.CANCELLED)
            elif member.status is MemberStatus.QUEUED:
                self._finish(member, MemberStatus.CANCELLED)
        batch.cancelled = True
        self._save(batch)
        logger.info("Cancelled batch", extra={"batch_id": batch_id})
        return batch

    def status(self, batch_id: str) -> Batch:
        batch = self._store.load(batch_id)
        batch.refresh_status()
        return batch

    def list(self) -> list[Batch]:
        return self._store.list()

    def _save(self, batch: Batch) -> None:
        batch.refresh_status()
        self._store.save(batch)

    def _finish(self, member: BatchMember, status: MemberStatus, error: str | None = None) -> None:
        member.status = status
        member.error = error
        member.idle_since = None
        member.finished_at = self._now()

    async def _spawn_member(self, batch: Batch, member: BatchMember) -> None:
        member.status = MemberStatus.SPAWNING
        self._save(batch)
        try:
            worker = await self._spawner.spawn(member.task_id, prompt=self._prompt_factory(member.task_id))
        except (DroverError, OSError) as exc:
            self._finish(member, MemberStatus.FAILED, str(exc))
            logger.warning(
                "Batch member failed to spawn",
                extra={"batch_id": batch.id, "task_id": member.task_id, "error": str(exc)},
            )
        else:
            member.status = MemberStatus.RUNNING
            member.worker_id = worker.id
            member.started_at = self._now()
            logger.info(
                "Batch member running",
                extra={"batch_id": batch.id, "task_id": member.task_id, "worker_id": worker.id},
            )
        self._save(batch)

    def _trip_breaker(self, batch: Batch) -> bool:
        threshold = batch.failure_threshold
        if not threshold or batch.count(MemberStatus.FAILED) < threshold:
            return False
        queued = [member for member in batch.members if member.status is MemberStatus.QUEUED]
        for member in queued:
            self._finish(member, MemberStatus.CANCELLED, "failure threshold reached")
        if queued:
            logger.warning(
                "Failure threshold reached; cancelled remaining queue",
                extra={"batch_id": batch.id, "threshold": threshold, "cancelled": len(queued)},
            )
        return True

    async def _check_member(self, member: BatchMember) -> bool:
        """Update one running member; return True when it changed status."""

        worker = self._registry.get(member.worker_id) if member.worker_id else None
        if worker is None:
            self._finish(member, MemberStatus.COMPLETE)
            return True

        if self._tracker is not None:
            try:
                task = await self._tracker.get_task(member.task_id)
            except TrackerError as exc:
                logger.debug("Tracker lookup failed", extra={"task_id": member.task_id, "error": str(exc)})
            else:
                if task is not None and task.status in DONE_STATUSES:
                    self._finish(member, MemberStatus.COMPLETE)
                    self._detector.reset(worker.address.pane_id)
                    return True

        pane_id = worker.address.pane_id
        if await self._backend.describe_pane(pane_id) is None:
            self._finish(member, MemberStatus.FAILED, f"worker pane {pane_id} is gone")
            self._detector.reset(pane_id)
            logger.warning(
                "Batch member pane is gone",
                extra={"task_id": member.task_id, "worker_id": worker.id, "pane_id": pane_id},
            )
            return True

        state = await self._detector.classify(pane_id)
        if state is CompletionState.PERMISSION_PENDING:
            member.idle_since = None
            await self._review_prompt(member, worker)
            return False
        member.reviewed_prompt = None
        if state is CompletionState.IDLE:
            now = self._now()
            if member.idle_since is None:
                member.idle_since = now
            if (now - member.idle_since).total_seconds() >= self._idle_grace:
                self._finish(member, MemberStatus.COMPLETE)
                self._detector.reset(pane_id)
                return True
        elif state is CompletionState.BUSY:
            member.idle_since = None
        return False

    async def _review_prompt(self, member: BatchMember, worker: Worker) -> None:
        """Send a newly shown permission prompt through auto-approve once."""

        pane_id = worker.address.pane_id
        output = self._detector.last_capture(pane_id)
        if output is None:
            return
        digest = hashlib.sha256(output.encode("utf-8")).hexdigest()
        if digest == member.reviewed_prompt:
            return
        member.reviewed_prompt = digest
        decided = await self._detector.review_permission(pane_id, output, worker)
        if decided is None:
            return
        logger.info(
            "Batch member permission prompt reviewed",
            extra={
                "task_id": member.task_id,
                "worker_id": worker.id,
                "request_id": decided.id,
                "decision": decided.decision.value if decided.decision else None,
            },
        )


__all__ = ["BatchCoordinator", "default_prompt"]
