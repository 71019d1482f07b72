"""FastMCP server bootstrap for Drover."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import DroverSettings, configure_logging, get_settings
from .errors import RegistryError
from .runtime import Runtime, build_runtime
from .terminal import TmuxBackend
from .tools import register_tools


def create_server(
    settings: Optional[DroverSettings] = None,
    runtime: Runtime | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with Drover's tools and status resource."""

    if runtime is None:
        runtime = build_runtime(settings or get_settings())
    settings = runtime.settings

    server = FastMCP(
        name="Drover",
        version=__version__,
        instructions=(
            "Drover supervises coding-agent workers running in tmux panes. Resolve targets, "
            "send messages and wait for completion, answer escalated permission prompts, "
            "and spawn batches of workers with a concurrency bound."
        ),
    )

    handles = register_tools(server, runtime=runtime)

    @server.resource(
        "resource://drover/status",
        name="drover_status",
        title="Drover Status",
        description="Current workers, batches and approval counters.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        registry_error: str | None = None
        try:
            workers = runtime.registry.list()
        except RegistryError as exc:
            workers = []
            registry_error = str(exc)

        batch_counts: dict[str, int] = {}
        for batch in runtime.batches.list():
            batch_counts[batch.status.value] = batch_counts.get(batch.status.value, 0) + 1

        backend_available = (
            runtime.backend.available() if isinstance(runtime.backend, TmuxBackend) else True
        )

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "backend": {
                "kind": type(runtime.backend).__name__,
                "available": backend_available,
                "session": settings.session_name,
            },
            "workers": {
                "count": len(workers),
                "ids": [worker.id for worker in workers],
                "error": registry_error,
            },
            "batches": {"by_status": batch_counts},
            "approvals": runtime.engine.stats.to_dict(),
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "runtime", runtime)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Drover MCP server."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Drover MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "session": settings.session_name,
        },
    )
    server.run()


if __name__ == "__main__":
    main()
