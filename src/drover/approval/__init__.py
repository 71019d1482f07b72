"""Auto-approve engine and its trust configuration."""

from .audit import AuditLog
from .engine import AutoApproveEngine, Verdict, evaluate, normalize_command
from .loader import TrustConfigLoader, parse_markdown_override
from .models import (
    BASELINE_DENY_PATTERNS,
    READ_ONLY_TOOLS,
    SHELL_TOOLS,
    ApprovalRequest,
    Decision,
    TrustConfig,
    TrustLayer,
)

__all__ = [
    "ApprovalRequest",
    "AuditLog",
    "AutoApproveEngine",
    "BASELINE_DENY_PATTERNS",
    "Decision",
    "READ_ONLY_TOOLS",
    "SHELL_TOOLS",
    "TrustConfig",
    "TrustConfigLoader",
    "TrustLayer",
    "Verdict",
    "evaluate",
    "normalize_command",
    "parse_markdown_override",
]
