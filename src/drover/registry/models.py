"""Worker record models."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TerminalRef(BaseModel):
    """Stable backend handles recorded for a worker."""

    session_id: str = Field(..., description="Backend session handle, e.g. '$1'.")
    session_name: str = Field(default="", description="Session name at spawn time.")
    window_id: str = Field(..., description="Backend window handle, e.g. '@4'.")
    pane_id: str = Field(..., description="Backend pane handle, e.g. '%12'.")
    subpane_index: int | None = Field(
        default=None,
        description="Set when the address points at a split pane rather than the primary one.",
    )


class Worker(BaseModel):
    """A supervised coding-agent process bound to exactly one task."""

    id: str = Field(..., description="Unique, human-assignable worker id.")
    task_id: str = Field(..., description="Task the worker is bound to.")
    role: str = Field(default="main", description="Free-form label distinguishing workers of one task.")
    address: TerminalRef = Field(..., description="Primary pane of the worker.")
    sub_panes: list[str] = Field(
        default_factory=list,
        description="Additional pane handles split off the worker's window, in creation order.",
    )
    worktree_path: str | None = Field(default=None, description="Git worktree the worker runs in.")
    repo_path: str | None = Field(default=None, description="Repository the worker was spawned from.")
    profile: str | None = Field(default=None, description="Agent profile used to launch the worker.")
    auto_approve_enabled: bool = Field(
        default=True,
        description="When false every permission prompt escalates to a human.",
    )
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("id", "task_id", "role")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Worker id, task id and role must not be empty")
        return normalized

    @property
    def pane_ids(self) -> list[str]:
        """Primary pane followed by recorded sub-panes."""

        return [self.address.pane_id, *self.sub_panes]


__all__ = ["TerminalRef", "Worker", "utcnow"]
