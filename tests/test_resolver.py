from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from drover.errors import DeadReferenceError, NotFoundError
from drover.registry import TerminalRef, Worker, WorkerRegistry
from drover.resolver import ResolutionMethod, TargetResolver

from fake_terminal import FakeTerminalBackend


class ExplodingRegistry:
    def __getattr__(self, name):
        raise AssertionError(f"registry.{name} must not be consulted")


def register_worker(registry: WorkerRegistry, worker_id: str, window, pane, *, task_id: str = "bd-1", sub_panes=()):
    return registry.register(
        Worker(
            id=worker_id,
            task_id=task_id,
            address=TerminalRef(
                session_id=pane.session_id,
                session_name=pane.session_name,
                window_id=window.id,
                pane_id=pane.id,
            ),
            sub_panes=list(sub_panes),
        )
    )


def test_literal_pane_handle_never_consults_registry() -> None:
    backend = FakeTerminalBackend()
    session = backend.add_session("work")
    _, pane = backend.add_window(session.id, "main", active=True)
    resolver = TargetResolver(backend, ExplodingRegistry())

    resolved = asyncio.run(resolver.resolve(pane.id))

    assert resolved.pane_id == pane.id
    assert resolved.resolved_via is ResolutionMethod.LITERAL_HANDLE
    assert resolved.worker_id is None


def test_literal_pane_handle_that_is_dead_is_not_found() -> None:
    backend = FakeTerminalBackend()
    session = backend.add_session("work")
    _, pane = backend.add_window(session.id, "main")
    backend.mark_dead(pane.id)
    resolver = TargetResolver(backend, ExplodingRegistry())

    with pytest.raises(NotFoundError):
        asyncio.run(resolver.resolve(pane.id))


def test_worker_wins_over_session_with_the_same_name(tmp_path: Path) -> None:
    backend = FakeTerminalBackend()
    decoy = backend.add_session("alpha")
    backend.add_window(decoy.id, "decoy", active=True)
    home = backend.add_session("drover")
    window, pane = backend.add_window(home.id, "alpha")
    registry = WorkerRegistry(tmp_path / "workers.json")
    register_worker(registry, "alpha", window, pane)

    resolved = asyncio.run(TargetResolver(backend, registry).resolve("alpha"))

    assert resolved.resolved_via is ResolutionMethod.WORKER
    assert resolved.worker_id == "alpha"
    assert resolved.pane_id == pane.id


def test_worker_subpane_index(tmp_path: Path) -> None:
    backend = FakeTerminalBackend()
    session = backend.add_session("drover")
    window, pane = backend.add_window(session.id, "w1")
    split = backend.add_pane(window.id)
    registry = WorkerRegistry(tmp_path / "workers.json")
    register_worker(registry, "w1", window, pane, sub_panes=[split.id])
    resolver = TargetResolver(backend, registry)

    assert asyncio.run(resolver.resolve("w1:0")).pane_id == pane.id
    assert asyncio.run(resolver.resolve("w1:1")).pane_id == split.id
    with pytest.raises(NotFoundError):
        asyncio.run(resolver.resolve("w1:x"))
    with pytest.raises(NotFoundError):
        asyncio.run(resolver.resolve("w1:5"))


def test_dead_subpane_is_purged_from_registry(tmp_path: Path) -> None:
    backend = FakeTerminalBackend()
    session = backend.add_session("drover")
    window, pane = backend.add_window(session.id, "w1")
    split = backend.add_pane(window.id)
    registry = WorkerRegistry(tmp_path / "workers.json")
    register_worker(registry, "w1", window, pane, task_id="bd-7", sub_panes=[split.id])
    backend.remove_pane(split.id)

    resolved = asyncio.run(TargetResolver(backend, registry).resolve("w1:1"))

    assert resolved.repaired is True
    assert resolved.pane_id == pane.id
    (worker,) = registry.find_by_task("bd-7")
    assert worker.sub_panes == []


def test_dead_primary_pane_is_repaired_to_first_live_pane(tmp_path: Path) -> None:
    backend = FakeTerminalBackend()
    session = backend.add_session("drover")
    window, pane = backend.add_window(session.id, "w1")
    split = backend.add_pane(window.id)
    registry = WorkerRegistry(tmp_path / "workers.json")
    register_worker(registry, "w1", window, pane, sub_panes=[split.id])
    backend.mark_dead(pane.id)

    resolved = asyncio.run(TargetResolver(backend, registry).resolve("w1"))

    assert resolved.pane_id == split.id
    worker = registry.require("w1")
    assert worker.address.pane_id == split.id
    assert worker.sub_panes == []


def test_worker_with_no_live_pane_is_a_dead_reference(tmp_path: Path) -> None:
    backend = FakeTerminalBackend()
    session = backend.add_session("drover")
    backend.add_window(session.id, "shell")
    window, pane = backend.add_window(session.id, "w1")
    registry = WorkerRegistry(tmp_path / "workers.json")
    register_worker(registry, "w1", window, pane)
    backend.remove_pane(pane.id)

    with pytest.raises(DeadReferenceError) as excinfo:
        asyncio.run(TargetResolver(backend, registry).resolve("w1"))

    assert excinfo.value.worker_id == "w1"
    assert "drover close w1" in excinfo.value.hint


def test_window_handle_prefers_owning_worker(tmp_path: Path) -> None:
    backend = FakeTerminalBackend()
    session = backend.add_session("drover")
    window, pane = backend.add_window(session.id, "w1")
    backend.add_pane(window.id, active=True)
    registry = WorkerRegistry(tmp_path / "workers.json")
    register_worker(registry, "w1", window, pane)

    resolved = asyncio.run(TargetResolver(backend, registry).resolve(window.id))

    assert resolved.worker_id == "w1"
    assert resolved.pane_id == pane.id


def test_window_handle_without_worker_uses_active_pane(tmp_path: Path) -> None:
    backend = FakeTerminalBackend()
    session = backend.add_session("scratch")
    window, _ = backend.add_window(session.id, "editor")
    second = backend.add_pane(window.id, active=True)
    resolver = TargetResolver(backend, WorkerRegistry(tmp_path / "workers.json"))

    resolved = asyncio.run(resolver.resolve(window.id))

    assert resolved.pane_id == second.id
    assert resolved.resolved_via is ResolutionMethod.LITERAL_HANDLE


def test_session_window_by_name_and_index(tmp_path: Path) -> None:
    backend = FakeTerminalBackend()
    session = backend.add_session("scratch")
    backend.add_window(session.id, "editor", active=True)
    _, logs_pane = backend.add_window(session.id, "logs")
    resolver = TargetResolver(backend, WorkerRegistry(tmp_path / "workers.json"))

    by_name = asyncio.run(resolver.resolve("scratch:logs"))
    by_index = asyncio.run(resolver.resolve("scratch:1"))

    assert by_name.pane_id == logs_pane.id
    assert by_index.pane_id == logs_pane.id
    assert by_name.resolved_via is ResolutionMethod.COMPOSITE
    with pytest.raises(NotFoundError):
        asyncio.run(resolver.resolve("scratch:missing"))


def test_bare_session_follows_active_flags_and_falls_back_to_first(tmp_path: Path) -> None:
    backend = FakeTerminalBackend()
    session = backend.add_session("scratch")
    _, first_pane = backend.add_window(session.id, "editor")
    second_window, second_pane = backend.add_window(session.id, "logs")
    backend.set_active_window(second_window.id)
    resolver = TargetResolver(backend, WorkerRegistry(tmp_path / "workers.json"))

    assert asyncio.run(resolver.resolve("scratch")).pane_id == second_pane.id

    backend.clear_active_flags(session.id)
    resolved = asyncio.run(resolver.resolve("scratch"))
    assert resolved.pane_id == first_pane.id
    assert resolved.resolved_via is ResolutionMethod.BARE_SESSION


def test_unknown_target_is_not_found_with_hint(tmp_path: Path) -> None:
    backend = FakeTerminalBackend()
    resolver = TargetResolver(backend, WorkerRegistry(tmp_path / "workers.json"))

    with pytest.raises(NotFoundError) as excinfo:
        asyncio.run(resolver.resolve("nothing-here"))
    assert excinfo.value.hint

    with pytest.raises(NotFoundError):
        asyncio.run(resolver.resolve("   "))


def test_resolution_label_and_dict(tmp_path: Path) -> None:
    backend = FakeTerminalBackend()
    session = backend.add_session("drover")
    window, pane = backend.add_window(session.id, "w1")
    registry = WorkerRegistry(tmp_path / "workers.json")
    register_worker(registry, "w1", window, pane)

    resolved = asyncio.run(TargetResolver(backend, registry).resolve("w1"))

    assert resolved.label("w1").startswith("w1 -> drover:")
    assert "(worker w1)" in resolved.label()
    assert resolved.to_dict()["resolved_via"] == "worker"
    assert resolved.as_ref().pane_id == pane.id
