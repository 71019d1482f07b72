"""Layered rule evaluation for pending permission requests."""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path

from ..errors import TrustConfigError
from ..registry import Worker
from .audit import AuditLog
from .loader import TrustConfigLoader
from .models import (
    BASELINE_DENY_PATTERNS,
    READ_ONLY_TOOLS,
    SHELL_TOOLS,
    ApprovalRequest,
    Decision,
    TrustConfig,
)

logger = logging.getLogger(__name__)

MAX_PARAMETER_LENGTH = 8192

_COMPOUND_RE = re.compile(r"&&|\||;|`|\$\(")
_ABSOLUTE_BINARY_RE = re.compile(r"^/[\w./-]*/(\w)")


def normalize_command(command: str) -> str:
    """Collapse whitespace and strip an absolute path from the first token."""

    normalized = " ".join(command.split())
    return _ABSOLUTE_BINARY_RE.sub(r"\1", normalized)


def is_compound(command: str) -> bool:
    return bool(_COMPOUND_RE.search(command))


@dataclass(frozen=True, slots=True)
class Verdict:
    decision: Decision
    rule_basis: str


def evaluate(request: ApprovalRequest, config: TrustConfig | None) -> Verdict:
    """Decide one request.

    Deny rules are checked before allow rules in every case, so a deny from
    any layer (or the baseline list) outranks any allow. ``config=None``
    selects the conservative policy used when trust config failed to load.
    """

    tool = request.tool_name
    shell = tool in SHELL_TOOLS
    command = normalize_command(request.parameter_text) if shell else request.parameter_text

    if shell:
        for name, pattern in BASELINE_DENY_PATTERNS:
            if pattern.search(command):
                return Verdict(Decision.DENIED, f"baseline:{name}")

    if not request.auto_approve_enabled:
        return Verdict(Decision.ESCALATED, "worker:auto-approve-disabled")

    if config is None:
        if tool in READ_ONLY_TOOLS:
            return Verdict(Decision.APPROVED, "conservative:read-only")
        return Verdict(Decision.ESCALATED, "conservative:escalate")

    for layer_name, layer in config.layers():
        if tool in layer.deny:
            return Verdict(Decision.DENIED, f"{layer_name}:deny:{tool}")

    if shell:
        for layer_name, layer in config.layers():
            for pattern in layer.bash_deny_patterns:
                if re.search(pattern, command):
                    return Verdict(Decision.DENIED, f"{layer_name}:bash-deny:{pattern}")
        return _evaluate_shell_allow(tool, command, config)

    for layer_name, layer in config.layers():
        if tool in layer.allow:
            return Verdict(Decision.APPROVED, f"{layer_name}:allow:{tool}")
    return Verdict(Decision.ESCALATED, "unmatched")


def _evaluate_shell_allow(tool: str, command: str, config: TrustConfig) -> Verdict:
    if not command:
        return Verdict(Decision.ESCALATED, "shell:no-command")
    # Over-long commands are never approved.
    if len(command) > MAX_PARAMETER_LENGTH:
        return Verdict(Decision.ESCALATED, "shell:command-too-long")

    compound = is_compound(command)
    for layer_name, layer in config.layers():
        for pattern in layer.bash_allow_patterns:
            matched = re.fullmatch(pattern, command) if compound else re.search(pattern, command)
            if matched:
                return Verdict(Decision.APPROVED, f"{layer_name}:bash-allow:{pattern}")

    if not config.has_bash_patterns():
        for layer_name, layer in config.layers():
            if tool in layer.allow:
                return Verdict(Decision.APPROVED, f"{layer_name}:allow:{tool}")

    if compound:
        return Verdict(Decision.ESCALATED, "shell:compound-unmatched")
    return Verdict(Decision.ESCALATED, "unmatched")


@dataclass(slots=True)
class ApprovalStats:
    evaluated: int = 0
    approved: int = 0
    denied: int = 0
    escalated: int = 0
    audit_failures: int = 0
    config_failures: int = 0

    def record(self, decision: Decision) -> None:
        self.evaluated += 1
        if decision is Decision.APPROVED:
            self.approved += 1
        elif decision is Decision.DENIED:
            self.denied += 1
        else:
            self.escalated += 1

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class AutoApproveEngine:
    """Evaluate requests against freshly loaded trust config and audit every decision."""

    def __init__(self, audit_log: AuditLog, loader: TrustConfigLoader | None = None) -> None:
        self._audit = audit_log
        self._loader = loader
        self.stats = ApprovalStats()

    @property
    def audit_log(self) -> AuditLog:
        return self._audit

    def load_config(self, repo_path: Path | str | None = None, task_id: str | None = None) -> TrustConfig | None:
        if self._loader is None:
            return None
        try:
            return self._loader.load(repo_path=repo_path, task_id=task_id)
        except TrustConfigError as exc:
            self.stats.config_failures += 1
            logger.warning(
                "Trust config failed to load; using conservative policy",
                extra={"error": str(exc), "repo_path": str(repo_path) if repo_path else None},
            )
            return None

    def review(self, request: ApprovalRequest, worker: Worker | None = None) -> ApprovalRequest:
        """Evaluate ``request``, append it to the audit log and return it decided."""

        if worker is not None:
            config = self.load_config(worker.repo_path or worker.worktree_path, worker.task_id)
        else:
            config = self.load_config()
        verdict = evaluate(request, config)
        decided = request.model_copy(update={"decision": verdict.decision, "rule_basis": verdict.rule_basis})

        try:
            self._audit.append(decided.audit_record())
        except OSError as exc:
            self.stats.audit_failures += 1
            logger.warning(
                "Audit write failed; escalating",
                extra={"request_id": decided.id, "error": str(exc)},
            )
            decided = decided.model_copy(
                update={"decision": Decision.ESCALATED, "rule_basis": f"audit-failed:{verdict.rule_basis}"}
            )

        self.stats.record(decided.decision)
        logger.info(
            "Approval decision",
            extra={
                "request_id": decided.id,
                "worker_id": decided.worker_id,
                "tool_name": decided.tool_name,
                "decision": decided.decision.value,
                "rule_basis": decided.rule_basis,
            },
        )
        return decided


__all__ = [
    "ApprovalStats",
    "AutoApproveEngine",
    "MAX_PARAMETER_LENGTH",
    "Verdict",
    "evaluate",
    "is_compound",
    "normalize_command",
]
