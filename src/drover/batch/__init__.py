"""Batch coordination of many workers."""

from .coordinator import BatchCoordinator
from .models import Batch, BatchMember, BatchStatus, MemberStatus, aggregate_status
from .store import BatchStore

__all__ = [
    "Batch",
    "BatchCoordinator",
    "BatchMember",
    "BatchStatus",
    "BatchStore",
    "MemberStatus",
    "aggregate_status",
]
