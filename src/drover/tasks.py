"""Task tracker integration.

Drover never stores task state itself. It asks an external tracker for a
task's status, the ready queue and status updates. ``CommandTaskTracker``
talks to a ``bd``-style CLI that prints JSON with ``--json``.
"""

from __future__ import annotations

import json
import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .errors import TrackerError
from .process import CommandResult, run_command

logger = logging.getLogger(__name__)

DONE_STATUSES = frozenset({"done", "closed", "complete", "completed"})


@dataclass(slots=True)
class TaskInfo:
    id: str
    status: str
    title: str = ""
    description: str | None = None
    blocked_by: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TaskInfo":
        return cls(
            id=str(payload["id"]),
            status=str(payload.get("status") or "unknown"),
            title=payload.get("title") or "",
            description=payload.get("description"),
            blocked_by=list(payload.get("blockedBy") or payload.get("blocked_by") or []),
        )


class TaskTracker(Protocol):
    async def get_task(self, task_id: str) -> TaskInfo | None:
        ...

    async def list_ready(self) -> list[str]:
        ...

    async def update_status(self, task_id: str, status: str) -> None:
        ...


class CommandTaskTracker:
    """Shell out to a tracker CLI (``bd show|ready|update ... --json``)."""

    def __init__(self, command: str = "bd", *, cwd: Path | None = None) -> None:
        self._argv = shlex.split(command)
        self._cwd = cwd

    async def _invoke(self, *args: str) -> CommandResult:
        argv = [*self._argv, *args]
        try:
            return await run_command(argv, cwd=self._cwd)
        except FileNotFoundError as exc:
            raise TrackerError(
                f"Task tracker '{self._argv[0]}' not found",
                hint="install the tracker or set DROVER_TRACKER",
            ) from exc

    @staticmethod
    def _decode(result: CommandResult) -> Any:
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise TrackerError(f"Task tracker returned invalid JSON: {exc}") from exc

    async def get_task(self, task_id: str) -> TaskInfo | None:
        result = await self._invoke("show", task_id, "--json")
        if not result.ok or not result.stdout.strip():
            return None
        payload = self._decode(result)
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        if not isinstance(payload, dict) or "id" not in payload:
            return None
        return TaskInfo.from_payload(payload)

    async def list_ready(self) -> list[str]:
        result = await self._invoke("ready", "--json")
        if not result.ok:
            raise TrackerError(f"Task tracker 'ready' failed: {result.message}")
        payload = self._decode(result) if result.stdout.strip() else []
        if not isinstance(payload, list):
            raise TrackerError("Task tracker 'ready' did not return a list")
        return [str(item["id"]) for item in payload if isinstance(item, dict) and "id" in item]

    async def update_status(self, task_id: str, status: str) -> None:
        result = await self._invoke("update", task_id, "--status", status)
        if not result.ok:
            raise TrackerError(f"Could not set {task_id} to {status}: {result.message}")
        logger.info("Updated task status", extra={"task_id": task_id, "status": status})


__all__ = ["CommandTaskTracker", "DONE_STATUSES", "TaskInfo", "TaskTracker"]
