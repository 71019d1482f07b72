"""File-backed worker registry.

The registry is the single source of truth for task/worker/address bindings.
Separate CLI invocations share it through one JSON document, so every call
re-reads the file and every write replaces it atomically; nothing is cached
between calls. Two processes updating the same worker at the same moment
still race, last writer wins.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..errors import ConflictError, NotFoundError, RegistryError
from ..storage import read_json, write_json_atomic
from .models import Worker, utcnow

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """CRUD over the persisted set of workers, keyed by worker id."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Worker]:
        document = read_json(self._path, {"workers": {}})
        raw = document.get("workers", {}) if isinstance(document, dict) else {}
        workers: dict[str, Worker] = {}
        for worker_id, payload in raw.items():
            try:
                workers[worker_id] = Worker.model_validate(payload)
            except ValidationError as exc:
                raise RegistryError(
                    f"Worker record '{worker_id}' in {self._path} is invalid: {exc}",
                    hint=f"remove the '{worker_id}' entry from {self._path}",
                ) from exc
        return workers

    def _save(self, workers: dict[str, Worker]) -> None:
        payload: dict[str, Any] = {
            "workers": {worker_id: worker.model_dump(mode="json") for worker_id, worker in workers.items()},
            "last_updated": utcnow().isoformat(),
        }
        write_json_atomic(self._path, payload)

    def register(self, worker: Worker) -> Worker:
        workers = self._load()
        if worker.id in workers:
            raise ConflictError(
                f"Worker '{worker.id}' is already registered",
                hint=f"pick another id or run `drover close {worker.id}` first",
            )
        workers[worker.id] = worker
        self._save(workers)
        logger.info(
            "Registered worker",
            extra={"worker_id": worker.id, "task_id": worker.task_id, "pane_id": worker.address.pane_id},
        )
        return worker

    def get(self, worker_id: str) -> Worker | None:
        return self._load().get(worker_id)

    def require(self, worker_id: str) -> Worker:
        worker = self.get(worker_id)
        if worker is None:
            raise NotFoundError(
                f"Worker '{worker_id}' not found",
                hint="run `drover workers` to list registered workers",
            )
        return worker

    def list(self) -> list[Worker]:
        return self._ordered(self._load().values())

    def find_by_task(self, task_id: str) -> list[Worker]:
        """Return every worker bound to ``task_id`` in creation order (possibly none)."""

        return self._ordered(worker for worker in self._load().values() if worker.task_id == task_id)

    def find_by_pane(self, pane_id: str) -> Worker | None:
        for worker in self.list():
            if pane_id in worker.pane_ids:
                return worker
        return None

    def find_by_window(self, window_id: str) -> Worker | None:
        for worker in self.list():
            if worker.address.window_id == window_id:
                return worker
        return None

    def update(self, worker_id: str, **changes: Any) -> Worker:
        """Apply ``changes`` to one record and rewrite the store."""

        if changes.get("id", worker_id) != worker_id:
            raise ValueError("Worker ids are immutable")
        workers = self._load()
        current = workers.get(worker_id)
        if current is None:
            raise NotFoundError(f"Worker '{worker_id}' not found")
        payload = current.model_dump()
        payload.update(changes)
        try:
            updated = Worker.model_validate(payload)
        except ValidationError as exc:
            raise RegistryError(f"Invalid update for worker '{worker_id}': {exc}") from exc
        workers[worker_id] = updated
        self._save(workers)
        return updated

    def remove(self, worker_id: str) -> bool:
        workers = self._load()
        if workers.pop(worker_id, None) is None:
            return False
        self._save(workers)
        logger.info("Removed worker", extra={"worker_id": worker_id})
        return True

    def add_subpane(self, worker_id: str, pane_id: str) -> Worker:
        worker = self.require(worker_id)
        if pane_id in worker.sub_panes:
            return worker
        return self.update(worker_id, sub_panes=[*worker.sub_panes, pane_id])

    def remove_subpane(self, worker_id: str, pane_id: str) -> Worker | None:
        worker = self.get(worker_id)
        if worker is None or pane_id not in worker.sub_panes:
            return worker
        return self.update(worker_id, sub_panes=[pane for pane in worker.sub_panes if pane != pane_id])

    def generate_worker_id(self, task_id: str, role: str = "main") -> str:
        """Pick a free id: the task id first, then ``<task>-<role>``, then numeric suffixes."""

        taken = set(self._load())
        if task_id not in taken:
            return task_id
        if role != "main" and f"{task_id}-{role}" not in taken:
            return f"{task_id}-{role}"
        suffix = 2
        while f"{task_id}-{suffix}" in taken:
            suffix += 1
        return f"{task_id}-{suffix}"

    @staticmethod
    def _ordered(workers) -> list[Worker]:
        return sorted(workers, key=_created_key)


def _created_key(worker: Worker) -> datetime:
    return worker.created_at


__all__ = ["WorkerRegistry"]
