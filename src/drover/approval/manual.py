"""Human-in-the-loop side of the approval flow.

Escalated requests stay pending until a ``manual`` audit record with the
same request id is appended. Approving presses ``Enter`` on the worker's
pane (the agent's default choice is "yes"); denying presses ``Escape``.
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import ConflictError, NotFoundError
from ..terminal.models import TerminalBackend
from .audit import AuditLog
from .models import Decision, utcnow

logger = logging.getLogger(__name__)

APPROVE_KEY = "Enter"
DENY_KEY = "Escape"


def pending_requests(audit_log: AuditLog) -> list[dict[str, Any]]:
    """Escalated automatic decisions that no human has answered yet."""

    records = audit_log.read()
    answered = {record.get("id") for record in records if record.get("source") == "manual"}
    return [
        record
        for record in records
        if record.get("source", "auto") == "auto"
        and record.get("decision") == Decision.ESCALATED.value
        and record.get("id") not in answered
    ]


def approval_status(audit_log: AuditLog, limit: int = 20) -> dict[str, Any]:
    records = audit_log.read()
    counts = {decision.value: 0 for decision in Decision}
    for record in records:
        decision = record.get("decision")
        if decision in counts:
            counts[decision] += 1
    return {
        "pending": pending_requests(audit_log),
        "counts": counts,
        "recent": records[-limit:],
    }


async def decide(
    audit_log: AuditLog,
    backend: TerminalBackend,
    request_id: str,
    approve: bool,
) -> dict[str, Any]:
    """Answer one pending request and record the human decision."""

    records = audit_log.read()
    if any(record.get("id") == request_id and record.get("source") == "manual" for record in records):
        raise ConflictError(f"Request {request_id} was already decided")
    pending = {record["id"]: record for record in pending_requests(audit_log)}
    request = pending.get(request_id)
    if request is None:
        raise NotFoundError(
            f"No pending approval request '{request_id}'",
            hint="run `drover approve --status` to list pending requests",
        )
    pane_id = request.get("pane_id")
    if not pane_id:
        raise NotFoundError(f"Request {request_id} has no pane to answer")

    await backend.send_key(pane_id, APPROVE_KEY if approve else DENY_KEY)
    decision = Decision.APPROVED if approve else Decision.DENIED
    record = {
        **request,
        "decision": decision.value,
        "rule_basis": "manual",
        "timestamp": utcnow().isoformat(),
        "source": "manual",
    }
    audit_log.append(record)
    logger.info(
        "Manual approval decision",
        extra={"request_id": request_id, "decision": decision.value, "pane_id": pane_id},
    )
    return record


__all__ = ["APPROVE_KEY", "DENY_KEY", "approval_status", "decide", "pending_requests"]
