"""Models for permission requests and layered trust configuration."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

SHELL_TOOLS = frozenset({"Bash", "bash", "Shell", "shell"})
READ_ONLY_TOOLS = frozenset({"Read", "Glob", "Grep", "LS", "WebSearch", "TodoRead", "NotebookRead"})

# Never overridable by any layer. Matched against normalized shell commands.
BASELINE_DENY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "rm-recursive-force",
        re.compile(
            r"\brm\s+(?:\S+\s+)*?(?:-[^\s-]*[rR][^\s-]*f|-[^\s-]*f[^\s-]*[rR]"
            r"|(?:-[rR]|--recursive)\s+(?:\S+\s+)*?(?:-f|--force)"
            r"|(?:-f|--force)\s+(?:\S+\s+)*?(?:-[rR]|--recursive))"
        ),
    ),
    ("git-push-force", re.compile(r"\bgit\s+push\b.*\s(?:--force\b|-f\b)")),
    ("git-reset-hard", re.compile(r"\bgit\s+reset\s+(?:\S+\s+)*?--hard\b")),
    ("git-clean-force", re.compile(r"\bgit\s+clean\s+(?:\S+\s+)*?-[^\s-]*f")),
    ("git-checkout-discard", re.compile(r"\bgit\s+checkout\s+(?:--\s+)?\.(?:\s|$)")),
    ("git-branch-force-delete", re.compile(r"\bgit\s+branch\s+(?:\S+\s+)*?-D\b")),
    ("mkfs", re.compile(r"\bmkfs(?:\.\w+)?\b")),
    ("dd-to-device", re.compile(r"\bdd\b.*\bof=/dev/")),
    ("redirect-to-device", re.compile(r">\s*/dev/(?:sd|hd|nvme|disk)\w*")),
    ("chmod-777-root", re.compile(r"\bchmod\s+-R\s+777\s+/(?:\s|$)")),
    ("fork-bomb", re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:")),
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Decision(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    ESCALATED = "escalated"


class ApprovalRequest(BaseModel):
    """A pending tool permission surfaced by a worker."""

    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    worker_id: str = Field(..., description="Worker that raised the prompt.")
    tool_name: str = Field(..., description="Tool the agent wants to use, e.g. 'Bash' or 'Edit'.")
    parameter_text: str = Field(default="", description="Literal command, path or argument shown in the prompt.")
    timestamp: datetime = Field(default_factory=utcnow)
    pane_id: str | None = Field(default=None, description="Pane that receives the approval keystroke.")
    auto_approve_enabled: bool = Field(default=True)
    decision: Decision | None = None
    rule_basis: str | None = Field(default=None, description="Layer and rule that produced the decision.")

    def audit_record(self, source: str = "auto") -> dict[str, Any]:
        return {
            "id": self.id,
            "worker_id": self.worker_id,
            "tool_name": self.tool_name,
            "parameter_text": self.parameter_text,
            "pane_id": self.pane_id,
            "decision": self.decision.value if self.decision else None,
            "rule_basis": self.rule_basis,
            "timestamp": self.timestamp.isoformat(),
            "source": source,
        }


class TrustLayer(BaseModel):
    """One level of auto-approve configuration."""

    allow: set[str] = Field(default_factory=set, description="Tool names approved outright.")
    deny: set[str] = Field(default_factory=set, description="Tool names always denied.")
    bash_allow_patterns: list[str] = Field(default_factory=list)
    bash_deny_patterns: list[str] = Field(default_factory=list)

    @field_validator("allow", "deny", "bash_allow_patterns", "bash_deny_patterns", mode="before")
    @classmethod
    def _ensure_sequence(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("bash_allow_patterns", "bash_deny_patterns")
    @classmethod
    def _compile_patterns(cls, value: list[str]) -> list[str]:
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid regex {pattern!r}: {exc}") from exc
        return value

    def merge(self, other: "TrustLayer") -> "TrustLayer":
        """Union of both layers; pattern order is preserved, duplicates dropped."""

        return TrustLayer(
            allow=self.allow | other.allow,
            deny=self.deny | other.deny,
            bash_allow_patterns=list(dict.fromkeys([*self.bash_allow_patterns, *other.bash_allow_patterns])),
            bash_deny_patterns=list(dict.fromkeys([*self.bash_deny_patterns, *other.bash_deny_patterns])),
        )

    def is_empty(self) -> bool:
        return not (self.allow or self.deny or self.bash_allow_patterns or self.bash_deny_patterns)


class TrustConfig(BaseModel):
    """Three independent layers merged at evaluation time.

    Layers are kept apart so a decision can name the layer that produced it;
    merging is a union, so no layer can remove another layer's deny.
    """

    global_layer: TrustLayer = Field(default_factory=TrustLayer)
    repo: TrustLayer = Field(default_factory=TrustLayer)
    task_override: TrustLayer = Field(default_factory=TrustLayer)

    def layers(self) -> Iterator[tuple[str, TrustLayer]]:
        yield "global", self.global_layer
        yield "repo", self.repo
        yield "task_override", self.task_override

    def merged(self) -> TrustLayer:
        return self.global_layer.merge(self.repo).merge(self.task_override)

    def has_bash_patterns(self) -> bool:
        merged = self.merged()
        return bool(merged.bash_allow_patterns or merged.bash_deny_patterns)

    def summary(self) -> dict[str, Any]:
        return {
            name: {
                "allow": sorted(layer.allow),
                "deny": sorted(layer.deny),
                "bash_allow_patterns": layer.bash_allow_patterns,
                "bash_deny_patterns": layer.bash_deny_patterns,
            }
            for name, layer in self.layers()
        }


__all__ = [
    "ApprovalRequest",
    "BASELINE_DENY_PATTERNS",
    "Decision",
    "READ_ONLY_TOOLS",
    "SHELL_TOOLS",
    "TrustConfig",
    "TrustLayer",
]
