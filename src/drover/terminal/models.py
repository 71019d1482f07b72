"""Value types and the backend protocol for terminal multiplexers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

PANE_HANDLE_RE = re.compile(r"^%\d+$")
WINDOW_HANDLE_RE = re.compile(r"^@\d+$")


def is_pane_handle(value: str) -> bool:
    return bool(PANE_HANDLE_RE.match(value))


def is_window_handle(value: str) -> bool:
    return bool(WINDOW_HANDLE_RE.match(value))


@dataclass(frozen=True, slots=True)
class SessionInfo:
    id: str
    name: str
    attached: bool = False


@dataclass(frozen=True, slots=True)
class WindowInfo:
    id: str
    name: str
    index: int
    active: bool
    session_id: str


@dataclass(frozen=True, slots=True)
class PaneInfo:
    id: str
    index: int
    active: bool
    window_id: str
    session_id: str
    session_name: str = ""
    dead: bool = False


class TerminalBackend(Protocol):
    """Primitives the orchestration core consumes from a terminal multiplexer.

    ``session``/``window`` arguments accept either a stable id (``$1``,
    ``@4``) or a name. Calls that address a missing object raise
    ``BackendError``; ``describe_pane`` returns ``None`` instead so it can be
    used as a liveness probe.
    """

    async def list_sessions(self) -> list[SessionInfo]:
        ...

    async def create_session(self, name: str, *, cwd: Path) -> SessionInfo:
        ...

    async def kill_session(self, session: str) -> None:
        ...

    async def list_windows(self, session: str) -> list[WindowInfo]:
        ...

    async def create_window(
        self,
        session: str,
        *,
        name: str,
        cwd: Path,
        argv: Sequence[str] | None = None,
    ) -> tuple[WindowInfo, PaneInfo]:
        ...

    async def kill_window(self, window: str) -> None:
        ...

    async def list_panes(self, window: str) -> list[PaneInfo]:
        ...

    async def create_pane(
        self,
        window: str,
        *,
        cwd: Path,
        argv: Sequence[str] | None = None,
    ) -> PaneInfo:
        ...

    async def kill_pane(self, pane_id: str) -> None:
        ...

    async def describe_pane(self, pane_id: str) -> PaneInfo | None:
        ...

    async def send_keys(self, pane_id: str, text: str, *, enter: bool = True) -> None:
        ...

    async def send_key(self, pane_id: str, key: str) -> None:
        ...

    async def capture_buffer(self, pane_id: str, *, lines: int = 200) -> str:
        ...


__all__ = [
    "PANE_HANDLE_RE",
    "PaneInfo",
    "SessionInfo",
    "TerminalBackend",
    "WINDOW_HANDLE_RE",
    "WindowInfo",
    "is_pane_handle",
    "is_window_handle",
]
