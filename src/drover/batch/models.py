"""Batch and batch-member models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemberStatus(str, Enum):
    QUEUED = "queued"
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BatchStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PARTIALLY_FAILED = "partially_failed"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


TERMINAL_MEMBER_STATUSES = frozenset({MemberStatus.COMPLETE, MemberStatus.FAILED, MemberStatus.CANCELLED})
ACTIVE_MEMBER_STATUSES = frozenset({MemberStatus.SPAWNING, MemberStatus.RUNNING})
TERMINAL_BATCH_STATUSES = frozenset({BatchStatus.COMPLETE, BatchStatus.PARTIALLY_FAILED, BatchStatus.CANCELLED})


class BatchMember(BaseModel):
    task_id: str
    worker_id: str | None = None
    status: MemberStatus = MemberStatus.QUEUED
    error: str | None = None
    idle_since: datetime | None = Field(
        default=None,
        description="First poll at which the worker was seen idle; reset when it turns busy.",
    )
    reviewed_prompt: str | None = Field(
        default=None,
        description="Digest of the permission prompt last handed to the approver; it is not reviewed again while on screen.",
    )
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_MEMBER_STATUSES


def aggregate_status(members: Iterable[MemberStatus], cancelled: bool = False) -> BatchStatus:
    """Batch status as a pure function of member statuses.

    - anything spawning/running keeps the batch running, even when cancelled;
    - a cancelled batch with nothing running is cancelled;
    - only queued members means the batch has not started;
    - any queued member left means running;
    - all complete (or no members) is complete;
    - otherwise a failure makes it partially failed, else it was cancelled.
    """

    statuses = list(members)
    if any(status in ACTIVE_MEMBER_STATUSES for status in statuses):
        return BatchStatus.RUNNING
    if cancelled:
        return BatchStatus.CANCELLED
    if statuses and all(status is MemberStatus.QUEUED for status in statuses):
        return BatchStatus.PENDING
    if any(status is MemberStatus.QUEUED for status in statuses):
        return BatchStatus.RUNNING
    if all(status is MemberStatus.COMPLETE for status in statuses):
        return BatchStatus.COMPLETE
    if any(status is MemberStatus.FAILED for status in statuses):
        return BatchStatus.PARTIALLY_FAILED
    return BatchStatus.CANCELLED


class Batch(BaseModel):
    id: str
    members: list[BatchMember]
    max_concurrency: int = Field(..., ge=1)
    status: BatchStatus = BatchStatus.PENDING
    cancelled: bool = False
    failure_threshold: int | None = Field(
        default=None,
        description="Cancel the remaining queue once this many members have failed.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("members")
    @classmethod
    def _unique_tasks(cls, value: list[BatchMember]) -> list[BatchMember]:
        seen: set[str] = set()
        for member in value:
            if member.task_id in seen:
                raise ValueError(f"Task '{member.task_id}' appears twice in the batch")
            seen.add(member.task_id)
        return value

    def refresh_status(self) -> BatchStatus:
        self.status = aggregate_status((member.status for member in self.members), self.cancelled)
        self.updated_at = utcnow()
        return self.status

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_BATCH_STATUSES

    def count(self, *statuses: MemberStatus) -> int:
        return sum(1 for member in self.members if member.status in statuses)

    def summary(self) -> dict[str, object]:
        counts = {status.value: 0 for status in MemberStatus}
        for member in self.members:
            counts[member.status.value] += 1
        return {
            "id": self.id,
            "status": self.status.value,
            "max_concurrency": self.max_concurrency,
            "members": len(self.members),
            "counts": counts,
            "created_at": self.created_at.isoformat(),
        }


__all__ = [
    "ACTIVE_MEMBER_STATUSES",
    "Batch",
    "BatchMember",
    "BatchStatus",
    "MemberStatus",
    "TERMINAL_BATCH_STATUSES",
    "TERMINAL_MEMBER_STATUSES",
    "aggregate_status",
]
