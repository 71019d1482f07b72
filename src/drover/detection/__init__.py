"""Completion detection over captured terminal output."""

from .detector import (
    CompletionDetector,
    CompletionState,
    SettleResult,
    StateChange,
    classify_output,
)
from .patterns import PermissionDetails, extract_permission, strip_ansi

__all__ = [
    "CompletionDetector",
    "CompletionState",
    "PermissionDetails",
    "SettleResult",
    "StateChange",
    "classify_output",
    "extract_permission",
    "strip_ansi",
]
