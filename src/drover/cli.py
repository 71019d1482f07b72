"""Drover command line interface."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Callable

from pydantic import ValidationError

from . import __version__
from .approval.manual import approval_status, decide
from .batch import Batch
from .config import configure_logging, get_settings
from .errors import DeadReferenceError, DroverError, NotFoundError, PollTimeoutError
from .registry import Worker
from .runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_NOT_FOUND = 2
EXIT_DEAD_REFERENCE = 3


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _worker_line(worker: Worker, state: str | None = None) -> str:
    line = f"{worker.id} [{worker.task_id}/{worker.role}] {worker.address.session_name}:{worker.address.window_id}.{worker.address.pane_id}"
    if worker.sub_panes:
        line += f" +{len(worker.sub_panes)} panes"
    if state:
        line += f" {state}"
    return line


def _batch_line(batch: Batch) -> str:
    counts = batch.summary()["counts"]
    parts = ", ".join(f"{name}={count}" for name, count in counts.items() if count)
    return f"{batch.id} [{batch.status.value}] max={batch.max_concurrency} {parts}"


async def _worker_for(runtime: Runtime, target: str) -> Worker:
    """Registry lookup first so dead workers can still be cleaned up."""

    worker = runtime.registry.get(target)
    if worker is not None:
        return worker
    resolved = await runtime.resolver.resolve(target)
    if resolved.worker_id is None:
        raise NotFoundError(f"'{target}' is not a worker", hint="run `drover workers` to list workers")
    return runtime.registry.require(resolved.worker_id)


async def cmd_work(args: argparse.Namespace, runtime: Runtime) -> int:
    worker, created = await runtime.spawner.work(
        args.task,
        role=args.role,
        worker_id=args.id,
        profile=args.profile,
        auto_approve=not args.no_auto_approve,
        prompt=args.prompt,
    )
    verb = "Spawned" if created else "Resumed"
    print(f"{verb} {_worker_line(worker)}")
    return EXIT_OK


async def cmd_workers(args: argparse.Namespace, runtime: Runtime) -> int:
    workers = runtime.registry.list()
    rows = []
    for worker in workers:
        alive = await runtime.backend.describe_pane(worker.address.pane_id) is not None
        state = "dead"
        if alive:
            state = (await runtime.detector.classify(worker.address.pane_id)).value if args.states else "alive"
        rows.append((worker, state))
    if args.json:
        _print_json([{**worker.model_dump(mode="json"), "state": state} for worker, state in rows])
        return EXIT_OK
    if not rows:
        print("No workers registered.")
    for worker, state in rows:
        print(_worker_line(worker, state))
    return EXIT_OK


async def cmd_close(args: argparse.Namespace, runtime: Runtime) -> int:
    worker = await _worker_for(runtime, args.worker)
    await runtime.spawner.close(
        worker.id,
        keep_worktree=not args.remove_worktree,
        complete_task=args.complete,
    )
    runtime.forget(worker)
    print(f"Closed {worker.id}")
    return EXIT_OK


async def cmd_kill(args: argparse.Namespace, runtime: Runtime) -> int:
    worker = await _worker_for(runtime, args.worker)
    await runtime.spawner.kill(worker.id)
    runtime.forget(worker)
    print(f"Killed {worker.id}")
    return EXIT_OK


async def cmd_read(args: argparse.Namespace, runtime: Runtime) -> int:
    resolved = await runtime.resolver.resolve(args.target)
    output = await runtime.backend.capture_buffer(resolved.pane_id, lines=args.lines)
    print(output)
    return EXIT_OK


async def cmd_send(args: argparse.Namespace, runtime: Runtime) -> int:
    resolved = await runtime.resolver.resolve(args.target)
    await runtime.backend.send_keys(resolved.pane_id, args.message, enter=not args.no_enter)
    print(f"Sent to {resolved.label(args.target)}")
    return EXIT_OK


async def cmd_run(args: argparse.Namespace, runtime: Runtime) -> int:
    resolved = await runtime.resolver.resolve(args.target)
    worker = runtime.owner_of(resolved)
    await runtime.backend.send_keys(resolved.pane_id, args.message)
    result = await runtime.detector.run_until_settled(
        resolved.pane_id,
        timeout=args.timeout or runtime.settings.run_timeout,
        poll_interval=runtime.settings.poll_interval,
        worker=worker,
    )
    if args.json:
        _print_json(result.to_dict())
    else:
        for request in result.decisions:
            print(f"auto-approve: {request.tool_name} {request.parameter_text!r} -> {request.decision.value} ({request.rule_basis})")
        suffix = " (timed out)" if result.timed_out else ""
        print(f"{result.final_state.value} after {result.elapsed_ms} ms{suffix}")
    if result.timed_out and args.fail_on_timeout:
        raise PollTimeoutError(
            f"{resolved.label(args.target)} did not settle within {result.elapsed_ms} ms",
            hint=f"drover read {args.target} to inspect the pane",
        )
    return EXIT_OK


async def cmd_watch(args: argparse.Namespace, runtime: Runtime) -> int:
    resolved = await runtime.resolver.resolve(args.target)
    async for change in runtime.detector.watch(
        resolved.pane_id,
        timeout=args.timeout or runtime.settings.run_timeout,
        poll_interval=runtime.settings.poll_interval,
    ):
        suffix = " (timed out)" if change.timed_out else ""
        print(f"{change.elapsed_ms / 1000:7.1f}s {change.state.value}{suffix}", flush=True)
    return EXIT_OK


async def cmd_split(args: argparse.Namespace, runtime: Runtime) -> int:
    worker = await _worker_for(runtime, args.worker)
    pane = await runtime.spawner.split(worker.id, command=args.command)
    index = len(runtime.registry.require(worker.id).sub_panes)
    print(f"Split {worker.id}: {pane.id} (address {worker.id}:{index})")
    return EXIT_OK


async def cmd_approve(args: argparse.Namespace, runtime: Runtime) -> int:
    if args.request_id is None or args.status:
        status = approval_status(runtime.audit_log)
        if args.json:
            _print_json(status)
            return EXIT_OK
        pending = status["pending"]
        print(f"{len(pending)} pending request(s)")
        for record in pending:
            print(f"  {record['id']} {record.get('worker_id')} {record.get('tool_name')} {record.get('parameter_text', '')!r}")
        counts = ", ".join(f"{name}={count}" for name, count in status["counts"].items())
        print(f"decisions: {counts}")
        return EXIT_OK
    record = await decide(runtime.audit_log, runtime.backend, args.request_id, approve=not args.deny)
    print(f"{record['decision']} {args.request_id}")
    return EXIT_OK


async def cmd_spawn_parallel(args: argparse.Namespace, runtime: Runtime) -> int:
    threshold = args.failure_threshold
    if threshold is None:
        threshold = runtime.settings.batch_failure_threshold
    batch = await runtime.batches.spawn_batch(args.tasks, args.max, failure_threshold=threshold)
    print(_batch_line(batch))
    if args.wait:
        batch = await runtime.batches.run(
            batch.id,
            poll_interval=runtime.settings.poll_interval,
            timeout=args.timeout,
        )
        print(_batch_line(batch))
    return EXIT_OK


async def cmd_batch(args: argparse.Namespace, runtime: Runtime) -> int:
    if args.action == "list":
        batches = runtime.batches.list()
        if args.json:
            _print_json([batch.summary() for batch in batches])
        elif not batches:
            print("No batches.")
        else:
            for batch in batches:
                print(_batch_line(batch))
        return EXIT_OK

    if not args.batch_id:
        raise DroverError(f"`batch {args.action}` needs a batch id", hint="run `drover batch list`")
    if args.action == "cancel":
        batch = await runtime.batches.cancel(args.batch_id, keep_worktree=not args.remove_worktrees)
    elif args.refresh:
        batch = await runtime.batches.advance(args.batch_id)
    else:
        batch = runtime.batches.status(args.batch_id)

    if args.json:
        _print_json(batch.model_dump(mode="json"))
        return EXIT_OK
    print(_batch_line(batch))
    for member in batch.members:
        detail = f" ({member.error})" if member.error else ""
        print(f"  {member.task_id}: {member.status.value} {member.worker_id or '-'}{detail}")
    return EXIT_OK


async def cmd_resolve(args: argparse.Namespace, runtime: Runtime) -> int:
    resolved = await runtime.resolver.resolve(args.target)
    if args.json:
        _print_json(resolved.to_dict())
    else:
        print(resolved.label(args.target))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="drover", description="Supervise terminal-multiplexed coding agents")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="cmd")

    def add(name: str, func: Callable, help_text: str) -> argparse.ArgumentParser:
        command = sub.add_parser(name, help=help_text)
        command.set_defaults(func=func)
        return command

    p_work = add("work", cmd_work, "Spawn or resume a worker for a task ('next' takes the first ready task)")
    p_work.add_argument("task")
    p_work.add_argument("--role", default="main")
    p_work.add_argument("--id", help="Explicit worker id")
    p_work.add_argument("--profile")
    p_work.add_argument("--prompt", help="Initial prompt passed to the agent")
    p_work.add_argument("--no-auto-approve", action="store_true")

    for name in ("workers", "dashboard"):
        p_list = add(name, cmd_workers, "List workers and their live state")
        p_list.add_argument("--json", action="store_true", help="Output JSON")
        p_list.set_defaults(states=name == "dashboard")

    p_close = add("close", cmd_close, "Close a worker's window and drop it from the registry")
    p_close.add_argument("worker")
    p_close.add_argument("--remove-worktree", action="store_true")
    p_close.add_argument("--complete", action="store_true", help="Mark the task done in the tracker")

    p_kill = add("kill", cmd_kill, "Kill a worker's panes and drop it from the registry")
    p_kill.add_argument("worker")

    p_read = add("read", cmd_read, "Print a target's captured output")
    p_read.add_argument("target")
    p_read.add_argument("--lines", type=int, default=200)

    p_send = add("send", cmd_send, "Type a message into a target")
    p_send.add_argument("target")
    p_send.add_argument("message")
    p_send.add_argument("--no-enter", action="store_true")

    p_run = add("run", cmd_run, "Send a message and wait until the target settles")
    p_run.add_argument("target")
    p_run.add_argument("message")
    p_run.add_argument("--timeout", type=float, default=None)
    p_run.add_argument("--json", action="store_true", help="Output JSON")
    p_run.add_argument(
        "--fail-on-timeout",
        action="store_true",
        help="Exit non-zero when the target has not settled before the deadline",
    )

    p_watch = add("watch", cmd_watch, "Stream completion state changes")
    p_watch.add_argument("target")
    p_watch.add_argument("--timeout", type=float, default=None)

    p_split = add("split", cmd_split, "Add a pane to a worker's window")
    p_split.add_argument("worker")
    p_split.add_argument("--command")

    p_approve = add("approve", cmd_approve, "Show or answer escalated permission requests")
    p_approve.add_argument("request_id", nargs="?")
    p_approve.add_argument("--status", action="store_true")
    p_approve.add_argument("--deny", action="store_true")
    p_approve.add_argument("--json", action="store_true", help="Output JSON")

    p_parallel = add("spawn-parallel", cmd_spawn_parallel, "Spawn workers for many tasks with a concurrency bound")
    p_parallel.add_argument("tasks", nargs="+")
    p_parallel.add_argument("--max", type=int, default=3)
    p_parallel.add_argument("--failure-threshold", type=int, default=None)
    p_parallel.add_argument("--wait", action="store_true", help="Keep advancing until the batch finishes")
    p_parallel.add_argument("--timeout", type=float, default=None)

    p_batch = add("batch", cmd_batch, "Inspect or cancel batches")
    p_batch.add_argument("action", choices=["status", "list", "cancel"])
    p_batch.add_argument("batch_id", nargs="?")
    p_batch.add_argument("--refresh", action="store_true", help="Advance the batch once before reporting")
    p_batch.add_argument("--remove-worktrees", action="store_true")
    p_batch.add_argument("--json", action="store_true", help="Output JSON")

    p_resolve = add("resolve", cmd_resolve, "Show what a target resolves to")
    p_resolve.add_argument("target")
    p_resolve.add_argument("--json", action="store_true", help="Output JSON")

    return parser


def _report(exc: DroverError) -> None:
    logger.debug("Command failed", extra={"error": type(exc).__name__})
    print(f"error: {exc}", file=sys.stderr)
    if exc.hint:
        print(f"hint: {exc.hint}", file=sys.stderr)


def main(argv: list[str] | None = None, runtime: Runtime | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_OK

    if runtime is None:
        try:
            settings = get_settings()
        except ValidationError as exc:
            print(f"error: invalid configuration: {exc}", file=sys.stderr)
            return EXIT_FAILURE
        configure_logging(settings.log_level)
        runtime = build_runtime(settings)

    try:
        return asyncio.run(args.func(args, runtime))
    except NotFoundError as exc:
        _report(exc)
        return EXIT_NOT_FOUND
    except DeadReferenceError as exc:
        _report(exc)
        return EXIT_DEAD_REFERENCE
    except DroverError as exc:
        _report(exc)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
