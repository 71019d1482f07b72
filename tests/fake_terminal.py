"""In-memory terminal backend shared by the test modules."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Deque, Sequence

from drover.errors import BackendError
from drover.terminal.models import PaneInfo, SessionInfo, WindowInfo


@dataclass
class _Pane:
    info: PaneInfo
    buffer: str = ""
    script: Deque[str] = field(default_factory=deque)
    capture_fails: bool = False
    argv: list[str] = field(default_factory=list)
    cwd: Path | None = None


@dataclass
class _Window:
    info: WindowInfo
    pane_ids: list[str] = field(default_factory=list)


@dataclass
class _Session:
    info: SessionInfo
    window_ids: list[str] = field(default_factory=list)


class FakeTerminalBackend:
    """Mimic the subset of tmux behaviour the orchestration core relies on.

    Ids are allocated sequentially (``$0``, ``@0``, ``%0`` ...) and never
    reused. Scripted buffers return one entry per capture; the final entry
    repeats forever so "stable output" is easy to model.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, _Session] = {}
        self._windows: dict[str, _Window] = {}
        self._panes: dict[str, _Pane] = {}
        self._next = {"$": 0, "@": 0, "%": 0}
        self.sent_text: list[tuple[str, str]] = []
        self.sent_keys: list[tuple[str, str]] = []
        self.captures: dict[str, int] = {}
        self.calls: list[str] = []

    # -- test helpers -------------------------------------------------------

    def _allocate(self, prefix: str) -> str:
        value = f"{prefix}{self._next[prefix]}"
        self._next[prefix] += 1
        return value

    def add_session(self, name: str) -> SessionInfo:
        """Create an empty session (no windows) for resolver tests."""

        if any(session.info.name == name for session in self._sessions.values()):
            raise BackendError(f"duplicate session: {name}")
        info = SessionInfo(id=self._allocate("$"), name=name)
        self._sessions[info.id] = _Session(info=info)
        return info

    def add_window(self, session: str, name: str, *, active: bool = False) -> tuple[WindowInfo, PaneInfo]:
        """Append a window with a single pane to ``session``."""

        record = self._session(session)
        window = WindowInfo(
            id=self._allocate("@"),
            name=name,
            index=len(record.window_ids),
            active=active,
            session_id=record.info.id,
        )
        if active:
            self._clear_active_window(record)
        record.window_ids.append(window.id)
        self._windows[window.id] = _Window(info=window)
        pane = self.add_pane(window.id, active=True)
        return window, pane

    def add_pane(self, window: str, *, active: bool = False) -> PaneInfo:
        record = self._window(window)
        session = self._sessions[record.info.session_id]
        index = (
            max(self._panes[pane_id].info.index for pane_id in record.pane_ids) + 1
            if record.pane_ids
            else 0
        )
        pane = PaneInfo(
            id=self._allocate("%"),
            index=index,
            active=active,
            window_id=record.info.id,
            session_id=session.info.id,
            session_name=session.info.name,
        )
        if active:
            for pane_id in record.pane_ids:
                self._panes[pane_id].info = replace(self._panes[pane_id].info, active=False)
        record.pane_ids.append(pane.id)
        self._panes[pane.id] = _Pane(info=pane)
        return pane

    def set_active_window(self, window: str) -> None:
        record = self._window(window)
        session = self._sessions[record.info.session_id]
        self._clear_active_window(session)
        record.info = replace(record.info, active=True)

    def clear_active_flags(self, session: str) -> None:
        """Drop every active flag in ``session`` (some backends report none)."""

        record = self._session(session)
        self._clear_active_window(record)
        for window_id in record.window_ids:
            for pane_id in self._windows[window_id].pane_ids:
                pane = self._panes[pane_id]
                pane.info = replace(pane.info, active=False)

    def mark_dead(self, pane_id: str) -> None:
        """Keep the pane listed but flag it dead (tmux ``remain-on-exit``)."""

        pane = self._pane(pane_id)
        pane.info = replace(pane.info, dead=True, active=False)

    def remove_pane(self, pane_id: str) -> None:
        """Make the pane vanish without going through ``kill_pane``."""

        self._drop_pane(pane_id)

    def set_buffer(self, pane_id: str, text: str) -> None:
        pane = self._pane(pane_id)
        pane.script.clear()
        pane.buffer = text

    def script(self, pane_id: str, outputs: Sequence[str]) -> None:
        pane = self._pane(pane_id)
        pane.script = deque(outputs)

    def fail_captures(self, pane_id: str, fail: bool = True) -> None:
        self._pane(pane_id).capture_fails = fail

    def pane_argv(self, pane_id: str) -> list[str]:
        return list(self._pane(pane_id).argv)

    def has_pane(self, pane_id: str) -> bool:
        return pane_id in self._panes

    def has_window(self, window_id: str) -> bool:
        return window_id in self._windows

    # -- lookups ------------------------------------------------------------

    def _session(self, session: str) -> _Session:
        if session in self._sessions:
            return self._sessions[session]
        for record in self._sessions.values():
            if record.info.name == session:
                return record
        raise BackendError(f"can't find session: {session}")

    def _window(self, window: str) -> _Window:
        try:
            return self._windows[window]
        except KeyError as exc:
            raise BackendError(f"can't find window: {window}") from exc

    def _pane(self, pane_id: str) -> _Pane:
        try:
            return self._panes[pane_id]
        except KeyError as exc:
            raise BackendError(f"can't find pane: {pane_id}") from exc

    def _clear_active_window(self, session: _Session) -> None:
        for window_id in session.window_ids:
            window = self._windows[window_id]
            window.info = replace(window.info, active=False)

    def _drop_pane(self, pane_id: str) -> None:
        pane = self._panes.pop(pane_id, None)
        if pane is None:
            raise BackendError(f"can't find pane: {pane_id}")
        window = self._windows[pane.info.window_id]
        window.pane_ids.remove(pane_id)
        if not window.pane_ids:
            self._drop_window(window.info.id)

    def _drop_window(self, window_id: str) -> None:
        window = self._windows.pop(window_id)
        for pane_id in window.pane_ids:
            self._panes.pop(pane_id, None)
        session = self._sessions[window.info.session_id]
        session.window_ids.remove(window_id)
        if not session.window_ids:
            del self._sessions[session.info.id]

    # -- TerminalBackend ----------------------------------------------------

    async def list_sessions(self) -> list[SessionInfo]:
        self.calls.append("list_sessions")
        return [record.info for record in self._sessions.values()]

    async def create_session(self, name: str, *, cwd: Path) -> SessionInfo:
        self.calls.append("create_session")
        info = self.add_session(name)
        self.add_window(info.id, "shell", active=True)
        return info

    async def kill_session(self, session: str) -> None:
        self.calls.append("kill_session")
        record = self._session(session)
        for window_id in list(record.window_ids):
            self._drop_window(window_id)
        self._sessions.pop(record.info.id, None)

    async def list_windows(self, session: str) -> list[WindowInfo]:
        self.calls.append("list_windows")
        record = self._session(session)
        return [self._windows[window_id].info for window_id in record.window_ids]

    async def create_window(
        self,
        session: str,
        *,
        name: str,
        cwd: Path,
        argv: Sequence[str] | None = None,
    ) -> tuple[WindowInfo, PaneInfo]:
        self.calls.append("create_window")
        window, pane = self.add_window(session, name)
        record = self._panes[pane.id]
        record.argv = list(argv or [])
        record.cwd = cwd
        return window, pane

    async def kill_window(self, window: str) -> None:
        self.calls.append("kill_window")
        self._window(window)
        self._drop_window(window)

    async def list_panes(self, window: str) -> list[PaneInfo]:
        self.calls.append("list_panes")
        record = self._window(window)
        return sorted(
            (self._panes[pane_id].info for pane_id in record.pane_ids),
            key=lambda pane: pane.index,
        )

    async def create_pane(
        self,
        window: str,
        *,
        cwd: Path,
        argv: Sequence[str] | None = None,
    ) -> PaneInfo:
        self.calls.append("create_pane")
        pane = self.add_pane(window)
        record = self._panes[pane.id]
        record.argv = list(argv or [])
        record.cwd = cwd
        return pane

    async def kill_pane(self, pane_id: str) -> None:
        self.calls.append("kill_pane")
        self._drop_pane(pane_id)

    async def describe_pane(self, pane_id: str) -> PaneInfo | None:
        self.calls.append("describe_pane")
        pane = self._panes.get(pane_id)
        if pane is None or pane.info.dead:
            return None
        return pane.info

    async def send_keys(self, pane_id: str, text: str, *, enter: bool = True) -> None:
        self._pane(pane_id)
        self.sent_text.append((pane_id, text))
        if enter:
            self.sent_keys.append((pane_id, "Enter"))

    async def send_key(self, pane_id: str, key: str) -> None:
        self._pane(pane_id)
        self.sent_keys.append((pane_id, key))

    async def capture_buffer(self, pane_id: str, *, lines: int = 200) -> str:
        pane = self._pane(pane_id)
        self.captures[pane_id] = self.captures.get(pane_id, 0) + 1
        if pane.capture_fails or pane.info.dead:
            raise BackendError(f"capture failed for {pane_id}")
        if pane.script:
            pane.buffer = pane.script.popleft() if len(pane.script) > 1 else pane.script[0]
        tail = pane.buffer.splitlines()[-lines:]
        return "\n".join(tail)


__all__ = ["FakeTerminalBackend"]
