from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from drover.errors import BackendError, ConflictError, NotFoundError
from drover.registry import WorkerRegistry
from drover.spawner import WorkerSpawner
from drover.tasks import TaskInfo

from fake_terminal import FakeTerminalBackend


class StubTracker:
    def __init__(self, ready: list[str] | None = None) -> None:
        self.ready = ready or []
        self.updates: list[tuple[str, str]] = []

    async def get_task(self, task_id: str) -> TaskInfo | None:
        return None

    async def list_ready(self) -> list[str]:
        return list(self.ready)

    async def update_status(self, task_id: str, status: str) -> None:
        self.updates.append((task_id, status))


class StubWorktrees:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.removed: list[str] = []

    async def ensure(self, task_id: str) -> Path:
        path = self.root / task_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    async def remove(self, path) -> None:
        self.removed.append(str(path))


class BrokenSendBackend(FakeTerminalBackend):
    async def send_keys(self, pane_id: str, text: str, *, enter: bool = True) -> None:
        raise BackendError("send-keys failed")


def make_spawner(tmp_path: Path, backend=None, **options):
    backend = backend or FakeTerminalBackend()
    registry = WorkerRegistry(tmp_path / "workers.json")
    spawner = WorkerSpawner(backend, registry, repo_root=tmp_path, **options)
    return spawner, backend, registry


def test_spawn_registers_worker_and_launches_agent(tmp_path: Path) -> None:
    tracker = StubTracker()
    spawner, backend, registry = make_spawner(tmp_path, tracker=tracker)

    worker = asyncio.run(spawner.spawn("bd-1", prompt="Fix the bug"))
    second = asyncio.run(spawner.spawn("bd-2"))

    assert registry.require("bd-1").address == worker.address
    assert backend.has_pane(worker.address.pane_id)
    assert worker.address.session_id == second.address.session_id
    assert backend.calls.count("create_session") == 1
    assert backend.sent_text[0] == (worker.address.pane_id, "DROVER_WORKER_ID=bd-1 claude 'Fix the bug'")
    assert tracker.updates == [("bd-1", "in_progress"), ("bd-2", "in_progress")]


def test_spawn_uses_a_worktree_when_configured(tmp_path: Path) -> None:
    spawner, _, _ = make_spawner(tmp_path, worktrees=StubWorktrees(tmp_path / "wt"))

    worker = asyncio.run(spawner.spawn("bd-3"))

    assert worker.worktree_path == str(tmp_path / "wt" / "bd-3")
    assert worker.repo_path == str(tmp_path)


def test_spawn_with_taken_id_is_a_conflict(tmp_path: Path) -> None:
    spawner, _, _ = make_spawner(tmp_path)
    asyncio.run(spawner.spawn("bd-1", worker_id="alpha"))

    with pytest.raises(ConflictError):
        asyncio.run(spawner.spawn("bd-2", worker_id="alpha"))


def test_failed_launch_rolls_back_registry_and_window(tmp_path: Path) -> None:
    spawner, backend, registry = make_spawner(tmp_path, backend=BrokenSendBackend())

    with pytest.raises(BackendError):
        asyncio.run(spawner.spawn("bd-1"))

    assert registry.list() == []
    assert backend.calls.count("kill_window") == 1


def test_work_resumes_live_worker_and_respawns_dead_one(tmp_path: Path) -> None:
    spawner, backend, _ = make_spawner(tmp_path)
    first, created = asyncio.run(spawner.work("bd-1"))
    again, created_again = asyncio.run(spawner.work("bd-1"))

    assert created is True
    assert created_again is False
    assert again.id == first.id

    backend.mark_dead(first.address.pane_id)
    replacement, created_third = asyncio.run(spawner.work("bd-1"))
    assert created_third is True
    assert replacement.id == "bd-1-2"


def test_work_next_takes_first_ready_task(tmp_path: Path) -> None:
    spawner, _, _ = make_spawner(tmp_path, tracker=StubTracker(ready=["bd-5", "bd-6"]))

    worker, _ = asyncio.run(spawner.work("next"))

    assert worker.task_id == "bd-5"


def test_work_next_without_tracker_is_not_found(tmp_path: Path) -> None:
    spawner, _, _ = make_spawner(tmp_path)

    with pytest.raises(NotFoundError):
        asyncio.run(spawner.work("next"))


def test_split_records_subpane(tmp_path: Path) -> None:
    spawner, backend, registry = make_spawner(tmp_path)
    worker = asyncio.run(spawner.spawn("bd-1"))

    pane = asyncio.run(spawner.split(worker.id, command="npm test --watch"))

    assert registry.require(worker.id).sub_panes == [pane.id]
    assert pane.window_id == worker.address.window_id
    assert backend.sent_text[-1] == (pane.id, "npm test --watch")


def test_close_kills_window_and_completes_task(tmp_path: Path) -> None:
    tracker = StubTracker()
    worktrees = StubWorktrees(tmp_path / "wt")
    spawner, backend, registry = make_spawner(tmp_path, tracker=tracker, worktrees=worktrees)
    worker = asyncio.run(spawner.spawn("bd-1"))

    asyncio.run(spawner.close(worker.id, keep_worktree=False, complete_task=True))

    assert not backend.has_window(worker.address.window_id)
    assert registry.get(worker.id) is None
    assert worktrees.removed == [worker.worktree_path]
    assert tracker.updates[-1] == ("bd-1", "done")


def test_kill_removes_every_pane(tmp_path: Path) -> None:
    spawner, backend, registry = make_spawner(tmp_path)
    worker = asyncio.run(spawner.spawn("bd-1"))
    split = asyncio.run(spawner.split(worker.id))

    asyncio.run(spawner.kill(worker.id))

    assert not backend.has_pane(worker.address.pane_id)
    assert not backend.has_pane(split.id)
    assert registry.list() == []
