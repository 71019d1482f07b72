"""Terminal multiplexer adapters."""

from .models import (
    PaneInfo,
    SessionInfo,
    TerminalBackend,
    WindowInfo,
    is_pane_handle,
    is_window_handle,
)
from .tmux import TmuxBackend

__all__ = [
    "PaneInfo",
    "SessionInfo",
    "TerminalBackend",
    "TmuxBackend",
    "WindowInfo",
    "is_pane_handle",
    "is_window_handle",
]
