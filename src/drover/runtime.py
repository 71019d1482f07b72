"""Wire the orchestration components together from settings."""

from __future__ import annotations

from dataclasses import dataclass

from .approval import AuditLog, AutoApproveEngine, TrustConfigLoader
from .batch import BatchCoordinator, BatchStore
from .config import DroverSettings, get_settings
from .detection import CompletionDetector
from .registry import Worker, WorkerRegistry
from .resolver import ResolvedTarget, TargetResolver
from .spawner import WorkerSpawner
from .tasks import CommandTaskTracker, TaskTracker
from .terminal import TerminalBackend, TmuxBackend
from .worktrees import WorktreeManager


@dataclass(slots=True)
class Runtime:
    settings: DroverSettings
    backend: TerminalBackend
    registry: WorkerRegistry
    resolver: TargetResolver
    engine: AutoApproveEngine
    detector: CompletionDetector
    spawner: WorkerSpawner
    batches: BatchCoordinator
    tracker: TaskTracker | None = None

    @property
    def audit_log(self) -> AuditLog:
        return self.engine.audit_log

    def forget(self, worker: Worker) -> None:
        """Drop detector state for every pane of a closed worker."""

        for pane_id in worker.pane_ids:
            self.detector.reset(pane_id)

    def owner_of(self, resolved: ResolvedTarget) -> Worker | None:
        """Worker that owns a resolved pane, including panes addressed by literal handle."""

        if resolved.worker_id:
            return self.registry.get(resolved.worker_id)
        return self.registry.find_by_pane(resolved.pane_id)


def build_runtime(
    settings: DroverSettings | None = None,
    *,
    backend: TerminalBackend | None = None,
    tracker: TaskTracker | None = None,
) -> Runtime:
    settings = settings or get_settings()
    backend = backend or TmuxBackend(settings.tmux_binary)
    if tracker is None and settings.tracker_command:
        tracker = CommandTaskTracker(settings.tracker_command, cwd=settings.repo_root)

    registry = WorkerRegistry(settings.worker_registry_path)
    engine = AutoApproveEngine(
        AuditLog(settings.audit_log_path),
        TrustConfigLoader(settings.global_trust_path, settings.repo_root),
    )
    detector = CompletionDetector(
        backend,
        approver=engine,
        stable_polls=settings.stable_polls,
        capture_lines=settings.capture_lines,
    )
    worktrees = (
        WorktreeManager(settings.repo_root, settings.worktrees_dir) if settings.use_worktrees else None
    )
    spawner = WorkerSpawner(
        backend,
        registry,
        repo_root=settings.repo_root,
        session_name=settings.session_name,
        agent_command=settings.agent_command,
        worktrees=worktrees,
        tracker=tracker,
    )
    batches = BatchCoordinator(
        BatchStore(settings.batches_dir),
        spawner,
        registry,
        backend,
        detector,
        tracker=tracker,
        idle_grace=settings.batch_idle_grace,
    )
    return Runtime(
        settings=settings,
        backend=backend,
        registry=registry,
        resolver=TargetResolver(backend, registry),
        engine=engine,
        detector=detector,
        spawner=spawner,
        batches=batches,
        tracker=tracker,
    )


__all__ = ["Runtime", "build_runtime"]
