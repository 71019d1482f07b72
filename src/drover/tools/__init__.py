"""Tool registration for the Drover MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..approval.manual import approval_status, decide
from ..runtime import Runtime


@dataclass(slots=True)
class ToolHandles:
    resolve_target: Any
    list_workers: Any
    spawn_worker: Any
    close_worker: Any
    read_output: Any
    send_message: Any
    run_and_wait: Any
    approval_status: Any
    decide_approval: Any
    spawn_batch: Any
    batch_status: Any
    cancel_batch: Any


def register_tools(server: FastMCP, *, runtime: Runtime) -> ToolHandles:
    """Register Drover's MCP tools on the server."""

    async def _resolve_target(target: str, context: Context | None = None) -> dict[str, Any]:
        """Resolve a human target string to a concrete pane."""

        resolved = await runtime.resolver.resolve(target)
        _emit_log(
            context,
            "debug",
            "Resolved target",
            extra={"target": target, "pane_id": resolved.pane_id, "via": resolved.resolved_via.value},
        )
        return resolved.to_dict()

    async def _list_workers(include_state: bool = False, context: Context | None = None) -> list[dict[str, Any]]:
        """List registered workers, optionally classifying each live pane once."""

        catalog = []
        for worker in runtime.registry.list():
            entry = worker.model_dump(mode="json")
            alive = await runtime.backend.describe_pane(worker.address.pane_id) is not None
            entry["alive"] = alive
            if include_state and alive:
                entry["state"] = (await runtime.detector.classify(worker.address.pane_id)).value
            catalog.append(entry)
        _emit_log(context, "debug", "Listing workers", extra={"count": len(catalog)})
        return catalog

    async def _spawn_worker(
        task_id: str,
        *,
        role: str = "main",
        worker_id: str | None = None,
        profile: str | None = None,
        auto_approve: bool = True,
        prompt: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Spawn a worker for a task, or return the live one already working on it."""

        worker, created = await runtime.spawner.work(
            task_id,
            role=role,
            worker_id=worker_id,
            profile=profile,
            auto_approve=auto_approve,
            prompt=prompt,
        )
        _emit_log(
            context,
            "info",
            "Spawned worker" if created else "Resumed worker",
            extra={"worker_id": worker.id, "task_id": worker.task_id},
        )
        return {"created": created, "worker": worker.model_dump(mode="json")}

    async def _close_worker(
        worker_id: str,
        *,
        remove_worktree: bool = False,
        complete_task: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Close a worker's window and drop it from the registry."""

        worker = await runtime.spawner.close(
            worker_id,
            keep_worktree=not remove_worktree,
            complete_task=complete_task,
        )
        runtime.forget(worker)
        _emit_log(context, "info", "Closed worker", extra={"worker_id": worker.id})
        return {"worker_id": worker.id, "task_id": worker.task_id, "closed": True}

    tool_resolve = server.tool(
        name="resolve_target",
        description=(
            "Resolve a target (pane handle %N, window handle @N, worker id, worker:N, "
            "session:window or session) to a concrete pane."
        ),
    )(_resolve_target)

    tool_list = server.tool(
        name="list_workers",
        description="List registered workers with their terminal addresses and liveness.",
    )(_list_workers)

    tool_spawn = server.tool(
        name="spawn_worker",
        description="Spawn a coding-agent worker for a task in a detached window, or resume the live one.",
    )(_spawn_worker)

    tool_close = server.tool(
        name="close_worker",
        description="Close a worker, optionally removing its worktree and marking the task done.",
    )(_close_worker)

    async def _read_output(target: str, lines: int = 200, context: Context | None = None) -> dict[str, Any]:
        """Return the captured buffer of a target."""

        resolved = await runtime.resolver.resolve(target)
        output = await runtime.backend.capture_buffer(resolved.pane_id, lines=lines)
        _emit_log(context, "debug", "Read output", extra={"pane_id": resolved.pane_id, "lines": lines})
        return {"target": resolved.to_dict(), "output": output}

    async def _send_message(
        target: str,
        message: str,
        *,
        enter: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Type a message into a target."""

        resolved = await runtime.resolver.resolve(target)
        await runtime.backend.send_keys(resolved.pane_id, message, enter=enter)
        _emit_log(context, "info", "Sent message", extra={"pane_id": resolved.pane_id})
        return {"target": resolved.to_dict(), "sent": True}

    async def _run_and_wait(
        target: str,
        message: str,
        *,
        timeout: float | None = None,
        include_output: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Send a message, then poll until the target settles or the timeout passes."""

        resolved = await runtime.resolver.resolve(target)
        worker = runtime.owner_of(resolved)
        await runtime.backend.send_keys(resolved.pane_id, message)
        result = await runtime.detector.run_until_settled(
            resolved.pane_id,
            timeout=timeout or runtime.settings.run_timeout,
            poll_interval=runtime.settings.poll_interval,
            worker=worker,
        )
        _emit_log(
            context,
            "info",
            "Target settled",
            extra={
                "pane_id": resolved.pane_id,
                "state": result.final_state.value,
                "elapsed_ms": result.elapsed_ms,
                "timed_out": result.timed_out,
            },
        )
        return {"target": resolved.to_dict(), **result.to_dict(include_output=include_output)}

    tool_read = server.tool(
        name="read_output",
        description="Capture the recent output of a target pane.",
    )(_read_output)

    tool_send = server.tool(
        name="send_message",
        description="Type text into a target pane, followed by Enter unless enter=false.",
    )(_send_message)

    tool_run = server.tool(
        name="run_and_wait",
        description=(
            "Send a message to a target and wait until it is idle, asks a question or needs a "
            "permission decision. Auto-approves prompts that the trust configuration allows."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Messages are typed into a live agent session",
            }
        },
    )(_run_and_wait)

    def _approval_status(limit: int = 20, context: Context | None = None) -> dict[str, Any]:
        """Pending escalations, decision counts and recent audit records."""

        status = approval_status(runtime.audit_log, limit=limit)
        status["engine"] = runtime.engine.stats.to_dict()
        _emit_log(context, "debug", "Approval status", extra={"pending": len(status["pending"])})
        return status

    async def _decide_approval(
        request_id: str,
        approve: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Answer an escalated permission request on the worker's pane."""

        record = await decide(runtime.audit_log, runtime.backend, request_id, approve=approve)
        _emit_log(
            context,
            "warning" if not approve else "info",
            "Manual approval decision",
            extra={"request_id": request_id, "decision": record["decision"]},
        )
        return record

    tool_approval_status = server.tool(
        name="approval_status",
        description="Show pending escalated permission requests and recent auto-approve decisions.",
    )(_approval_status)

    tool_decide = server.tool(
        name="decide_approval",
        description="Approve or deny an escalated permission request by id.",
    )(_decide_approval)

    async def _spawn_batch(
        task_ids: list[str],
        max_concurrency: int = 3,
        failure_threshold: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Queue tasks as a batch and start the first max_concurrency of them."""

        if failure_threshold is None:
            failure_threshold = runtime.settings.batch_failure_threshold
        batch = await runtime.batches.spawn_batch(
            task_ids,
            max_concurrency,
            failure_threshold=failure_threshold,
        )
        _emit_log(
            context,
            "info",
            "Spawned batch",
            extra={"batch_id": batch.id, "members": len(batch.members), "max_concurrency": max_concurrency},
        )
        return batch.model_dump(mode="json")

    async def _batch_status(batch_id: str, refresh: bool = True, context: Context | None = None) -> dict[str, Any]:
        """Report a batch, advancing it once first when refresh is true."""

        batch = await runtime.batches.advance(batch_id) if refresh else runtime.batches.status(batch_id)
        _emit_log(context, "debug", "Batch status", extra={"batch_id": batch_id, "status": batch.status.value})
        return batch.model_dump(mode="json")

    async def _cancel_batch(
        batch_id: str,
        remove_worktrees: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Cancel a batch and close its active workers."""

        batch = await runtime.batches.cancel(batch_id, keep_worktree=not remove_worktrees)
        _emit_log(context, "warning", "Cancelled batch", extra={"batch_id": batch_id})
        return batch.model_dump(mode="json")

    tool_spawn_batch = server.tool(
        name="spawn_batch",
        description="Spawn workers for several tasks with at most max_concurrency running at once.",
    )(_spawn_batch)

    tool_batch_status = server.tool(
        name="batch_status",
        description="Advance a batch (check running members, fill free slots) and report its state.",
    )(_batch_status)

    tool_cancel_batch = server.tool(
        name="cancel_batch",
        description="Cancel a batch: queued members are dropped and active workers are closed.",
    )(_cancel_batch)

    return ToolHandles(
        resolve_target=tool_resolve,
        list_workers=tool_list,
        spawn_worker=tool_spawn,
        close_worker=tool_close,
        read_output=tool_read,
        send_message=tool_send,
        run_and_wait=tool_run,
        approval_status=tool_approval_status,
        decide_approval=tool_decide,
        spawn_batch=tool_spawn_batch,
        batch_status=tool_batch_status,
        cancel_batch=tool_cancel_batch,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
