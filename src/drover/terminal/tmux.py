"""tmux implementation of :class:`TerminalBackend`.

Every call shells out to the ``tmux`` CLI through an asyncio subprocess so
polling loops never block the event loop. Listing commands use tab-separated
``-F`` formats; creation commands are detached (``-d``) and print the new
object's id with ``-P`` so callers never depend on which pane has focus.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import shutil
from pathlib import Path
from typing import Sequence

from ..errors import BackendError
from .models import PaneInfo, SessionInfo, WindowInfo

logger = logging.getLogger(__name__)

_SESSION_FORMAT = "#{session_id}\t#{session_name}\t#{session_attached}"
_WINDOW_FORMAT = "#{window_id}\t#{window_name}\t#{window_index}\t#{window_active}\t#{session_id}"
_PANE_FORMAT = (
    "#{pane_id}\t#{pane_index}\t#{pane_active}\t#{window_id}\t#{session_id}"
    "\t#{session_name}\t#{pane_dead}"
)


def _flag(value: str) -> bool:
    return value.strip() not in {"", "0"}


def _parse_session(line: str) -> SessionInfo:
    session_id, name, attached = line.split("\t")
    return SessionInfo(id=session_id, name=name, attached=_flag(attached))


def _parse_window(line: str) -> WindowInfo:
    window_id, name, index, active, session_id = line.split("\t")
    return WindowInfo(
        id=window_id,
        name=name,
        index=int(index),
        active=_flag(active),
        session_id=session_id,
    )


def _parse_pane(line: str) -> PaneInfo:
    pane_id, index, active, window_id, session_id, session_name, dead = line.split("\t")
    return PaneInfo(
        id=pane_id,
        index=int(index),
        active=_flag(active),
        window_id=window_id,
        session_id=session_id,
        session_name=session_name,
        dead=_flag(dead),
    )


def session_target(session: str) -> str:
    """Return a ``-t`` target that matches a session id or an exact name."""

    if session.startswith("$") or session.startswith("="):
        return session
    return f"={session}"


class TmuxBackend:
    """Drive a tmux server through its command line interface."""

    def __init__(self, binary: str = "tmux") -> None:
        self._binary = binary

    @property
    def binary(self) -> str:
        return self._binary

    def available(self) -> bool:
        return shutil.which(self._binary) is not None

    async def _invoke(self, *args: str) -> str:
        cmd = [self._binary, *args]
        logger.debug("tmux call", extra={"argv": cmd})
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendError(
                f"tmux executable '{self._binary}' not found",
                hint="install tmux or point DROVER_TMUX at it",
            ) from exc
        stdout_bytes, stderr_bytes = await process.communicate()
        if process.returncode != 0:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
            raise BackendError(f"tmux {args[0]} failed: {stderr or process.returncode}")
        return stdout_bytes.decode("utf-8", errors="replace")

    async def _lines(self, *args: str) -> list[str]:
        output = await self._invoke(*args)
        return [line for line in output.splitlines() if line.strip()]

    async def list_sessions(self) -> list[SessionInfo]:
        try:
            lines = await self._lines("list-sessions", "-F", _SESSION_FORMAT)
        except BackendError as exc:
            # No server running means no sessions.
            if "no server running" in str(exc) or "error connecting" in str(exc):
                return []
            raise
        return [_parse_session(line) for line in lines]

    async def create_session(self, name: str, *, cwd: Path) -> SessionInfo:
        line = await self._invoke(
            "new-session", "-d", "-s", name, "-c", str(cwd), "-P", "-F", _SESSION_FORMAT
        )
        return _parse_session(line.strip())

    async def kill_session(self, session: str) -> None:
        await self._invoke("kill-session", "-t", session_target(session))

    async def list_windows(self, session: str) -> list[WindowInfo]:
        lines = await self._lines("list-windows", "-t", session_target(session), "-F", _WINDOW_FORMAT)
        return sorted((_parse_window(line) for line in lines), key=lambda window: window.index)

    async def create_window(
        self,
        session: str,
        *,
        name: str,
        cwd: Path,
        argv: Sequence[str] | None = None,
    ) -> tuple[WindowInfo, PaneInfo]:
        args = [
            "new-window",
            "-d",
            "-t",
            f"{session_target(session)}:",
            "-n",
            name,
            "-c",
            str(cwd),
            "-P",
            "-F",
            _PANE_FORMAT,
        ]
        if argv:
            args.append(" ".join(shlex.quote(part) for part in argv))
        pane = _parse_pane((await self._invoke(*args)).strip())
        windows = await self.list_windows(pane.session_id)
        window = next((item for item in windows if item.id == pane.window_id), None)
        if window is None:
            raise BackendError(f"window {pane.window_id} vanished right after creation")
        return window, pane

    async def kill_window(self, window: str) -> None:
        await self._invoke("kill-window", "-t", window)

    async def list_panes(self, window: str) -> list[PaneInfo]:
        lines = await self._lines("list-panes", "-t", window, "-F", _PANE_FORMAT)
        return sorted((_parse_pane(line) for line in lines), key=lambda pane: pane.index)

    async def create_pane(
        self,
        window: str,
        *,
        cwd: Path,
        argv: Sequence[str] | None = None,
    ) -> PaneInfo:
        args = ["split-window", "-d", "-t", window, "-c", str(cwd), "-P", "-F", _PANE_FORMAT]
        if argv:
            args.append(" ".join(shlex.quote(part) for part in argv))
        return _parse_pane((await self._invoke(*args)).strip())

    async def kill_pane(self, pane_id: str) -> None:
        await self._invoke("kill-pane", "-t", pane_id)

    async def describe_pane(self, pane_id: str) -> PaneInfo | None:
        try:
            line = await self._invoke("display-message", "-p", "-t", pane_id, _PANE_FORMAT)
        except BackendError:
            return None
        line = line.strip()
        if not line:
            return None
        pane = _parse_pane(line)
        # display-message falls back to the current pane for unknown targets.
        if pane.id != pane_id or pane.dead:
            return None
        return pane

    async def send_keys(self, pane_id: str, text: str, *, enter: bool = True) -> None:
        await self._invoke("send-keys", "-t", pane_id, "-l", text)
        if enter:
            await self._invoke("send-keys", "-t", pane_id, "Enter")

    async def send_key(self, pane_id: str, key: str) -> None:
        await self._invoke("send-keys", "-t", pane_id, key)

    async def capture_buffer(self, pane_id: str, *, lines: int = 200) -> str:
        return await self._invoke("capture-pane", "-p", "-J", "-t", pane_id, "-S", f"-{lines}")


__all__ = ["TmuxBackend", "session_target"]
