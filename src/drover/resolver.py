"""Turn human-facing target strings into concrete terminal addresses.

Precedence, first match wins:

1. literal pane handle (``%12``), checked for liveness only;
2. literal window handle (``@4``), the owning worker's pane or the window's
   active pane;
3. worker id, optionally ``worker:N`` for the N-th sub-pane;
4. ``session:window`` where window is a name or an index;
5. bare session name, following the active window and pane flags and
   falling back to the first window/pane when none is flagged.

Nothing is cached: each call reads the registry and the backend again. The
only write is the repair of a worker whose recorded pane died.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .errors import BackendError, DeadReferenceError, NotFoundError
from .registry import TerminalRef, Worker, WorkerRegistry
from .terminal.models import (
    PaneInfo,
    SessionInfo,
    TerminalBackend,
    WindowInfo,
    is_pane_handle,
    is_window_handle,
)

logger = logging.getLogger(__name__)


class ResolutionMethod(str, Enum):
    LITERAL_HANDLE = "literal-handle"
    WORKER = "worker"
    COMPOSITE = "composite"
    BARE_SESSION = "bare-session"


@dataclass(slots=True)
class ResolvedTarget:
    session_id: str
    window_id: str
    pane_id: str
    resolved_via: ResolutionMethod
    session_name: str = ""
    worker_id: str | None = None
    pane_index: int | None = None
    repaired: bool = False

    def label(self, original: str | None = None) -> str:
        session = self.session_name or self.session_id
        text = f"{session}:{self.window_id}.{self.pane_id} via {self.resolved_via.value}"
        if self.worker_id:
            text += f" (worker {self.worker_id})"
        if self.repaired:
            text += " [repaired]"
        return f"{original} -> {text}" if original else text

    def as_ref(self) -> TerminalRef:
        return TerminalRef(
            session_id=self.session_id,
            session_name=self.session_name,
            window_id=self.window_id,
            pane_id=self.pane_id,
            subpane_index=self.pane_index or None,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "session_name": self.session_name,
            "window_id": self.window_id,
            "pane_id": self.pane_id,
            "resolved_via": self.resolved_via.value,
            "worker_id": self.worker_id,
            "pane_index": self.pane_index,
            "repaired": self.repaired,
        }


def _from_pane(pane: PaneInfo, method: ResolutionMethod, **extra) -> ResolvedTarget:
    return ResolvedTarget(
        session_id=pane.session_id,
        session_name=pane.session_name,
        window_id=pane.window_id,
        pane_id=pane.id,
        resolved_via=method,
        **extra,
    )


def _pick_active(items):
    for item in items:
        if item.active:
            return item
    return items[0] if items else None


class TargetResolver:
    """Resolve targets against the worker registry and the terminal backend."""

    def __init__(self, backend: TerminalBackend, registry: WorkerRegistry) -> None:
        self._backend = backend
        self._registry = registry

    async def resolve(self, target: str) -> ResolvedTarget:
        target = target.strip()
        if not target:
            raise NotFoundError("Empty target", hint="pass a worker id, session name or pane handle")

        if is_pane_handle(target):
            pane = await self._backend.describe_pane(target)
            if pane is None:
                raise NotFoundError(f"Pane {target} does not exist or is dead")
            return _from_pane(pane, ResolutionMethod.LITERAL_HANDLE)

        if is_window_handle(target):
            return await self._resolve_window_handle(target)

        worker, index = self._lookup_worker(target)
        if worker is not None:
            return await self._resolve_worker(worker, index)

        sessions = await self._backend.list_sessions()
        if ":" in target:
            session_part, window_part = target.split(":", 1)
            session = _find_session(sessions, session_part)
            if session is not None:
                return await self._resolve_composite(session, window_part, target)

        session = _find_session(sessions, target)
        if session is not None:
            return await self._resolve_bare_session(session)

        raise NotFoundError(
            f"No worker, session or pane matches '{target}'",
            hint="run `drover workers` to list workers or `tmux ls` for sessions",
        )

    def _lookup_worker(self, target: str) -> tuple[Worker | None, int | None]:
        worker = self._registry.get(target)
        if worker is not None:
            return worker, None
        if ":" not in target:
            return None, None
        base, suffix = target.rsplit(":", 1)
        worker = self._registry.get(base)
        if worker is None:
            return None, None
        if not suffix.isdigit():
            raise NotFoundError(
                f"Invalid pane index '{suffix}' for worker '{base}'",
                hint=f"use {base}:0 for the main pane or {base}:N for the N-th split",
            )
        return worker, int(suffix)

    async def _resolve_window_handle(self, window_id: str) -> ResolvedTarget:
        worker = self._registry.find_by_window(window_id)
        if worker is not None:
            return await self._resolve_worker(worker, None)
        try:
            panes = await self._backend.list_panes(window_id)
        except BackendError as exc:
            raise NotFoundError(f"Window {window_id} does not exist") from exc
        pane = _pick_active([pane for pane in panes if not pane.dead])
        if pane is None:
            raise NotFoundError(f"Window {window_id} has no live pane")
        return _from_pane(pane, ResolutionMethod.LITERAL_HANDLE)

    async def _resolve_worker(self, worker: Worker, index: int | None) -> ResolvedTarget:
        if index is None or index == 0:
            recorded = worker.address.pane_id
        elif index <= len(worker.sub_panes):
            recorded = worker.sub_panes[index - 1]
        else:
            return await self._resolve_window_pane(worker, index)

        pane = await self._backend.describe_pane(recorded)
        if pane is not None:
            return _from_pane(pane, ResolutionMethod.WORKER, worker_id=worker.id, pane_index=index)
        return await self._repair(worker, recorded, index)

    async def _resolve_window_pane(self, worker: Worker, index: int) -> ResolvedTarget:
        panes = await self._live_panes(worker.address.window_id)
        if not panes:
            raise DeadReferenceError(
                f"Worker '{worker.id}' has no live pane",
                worker_id=worker.id,
                hint=f"run `drover close {worker.id}` to clean up",
            )
        if index >= len(panes):
            raise NotFoundError(
                f"Worker '{worker.id}' has no pane {index} ({len(panes)} live panes)",
                hint=f"use {worker.id}:0 .. {worker.id}:{len(panes) - 1}",
            )
        return _from_pane(panes[index], ResolutionMethod.WORKER, worker_id=worker.id, pane_index=index)

    async def _repair(self, worker: Worker, stale: str, index: int | None) -> ResolvedTarget:
        live = await self._live_panes(worker.address.window_id)
        if not live:
            raise DeadReferenceError(
                f"Worker '{worker.id}' pane {stale} is gone and its window has no live pane",
                worker_id=worker.id,
                hint=f"run `drover close {worker.id}` to clean up",
            )
        fallback = live[0]
        if stale == worker.address.pane_id:
            address = worker.address.model_copy(update={"pane_id": fallback.id})
            sub_panes = [pane for pane in worker.sub_panes if pane not in {stale, fallback.id}]
            self._registry.update(worker.id, address=address, sub_panes=sub_panes)
        else:
            self._registry.remove_subpane(worker.id, stale)
        logger.warning(
            "Worker pane is dead; fell back to first live pane",
            extra={"worker_id": worker.id, "stale_pane": stale, "pane_id": fallback.id},
        )
        return _from_pane(
            fallback,
            ResolutionMethod.WORKER,
            worker_id=worker.id,
            pane_index=index,
            repaired=True,
        )

    async def _live_panes(self, window_id: str) -> list[PaneInfo]:
        try:
            panes = await self._backend.list_panes(window_id)
        except BackendError:
            return []
        return [pane for pane in panes if not pane.dead]

    async def _resolve_composite(self, session: SessionInfo, window_part: str, target: str) -> ResolvedTarget:
        windows = await self._backend.list_windows(session.id)
        window = _find_window(windows, window_part)
        if window is None:
            raise NotFoundError(
                f"Session '{session.name}' has no window '{window_part}'",
                hint=f"windows: {', '.join(item.name for item in windows) or 'none'}",
            )
        panes = await self._backend.list_panes(window.id)
        pane = _pick_active(panes)
        if pane is None:
            raise NotFoundError(f"Window '{target}' has no panes")
        return _from_pane(pane, ResolutionMethod.COMPOSITE)

    async def _resolve_bare_session(self, session: SessionInfo) -> ResolvedTarget:
        window = _pick_active(await self._backend.list_windows(session.id))
        if window is None:
            raise NotFoundError(f"Session '{session.name}' has no windows")
        pane = _pick_active(await self._backend.list_panes(window.id))
        if pane is None:
            raise NotFoundError(f"Session '{session.name}' has no panes")
        return _from_pane(pane, ResolutionMethod.BARE_SESSION)


def _find_session(sessions: list[SessionInfo], key: str) -> SessionInfo | None:
    for session in sessions:
        if session.id == key or session.name == key:
            return session
    return None


def _find_window(windows: list[WindowInfo], key: str) -> WindowInfo | None:
    for window in windows:
        if window.name == key or window.id == key:
            return window
    if key.isdigit():
        for window in windows:
            if window.index == int(key):
                return window
    return None


__all__ = ["ResolutionMethod", "ResolvedTarget", "TargetResolver"]
