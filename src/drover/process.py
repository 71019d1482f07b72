"""Async subprocess helper for the external CLIs Drover drives (git, task tracker)."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of one external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def message(self) -> str:
        return (self.stderr or self.stdout).strip() or f"exit status {self.returncode}"


async def run_command(argv: Sequence[str], *, cwd: Path | None = None) -> CommandResult:
    """Run ``argv`` to completion; ``FileNotFoundError`` propagates when the binary is missing."""

    process = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd) if cwd is not None else None,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout_bytes, stderr_bytes = await process.communicate()
    return CommandResult(
        args=tuple(argv),
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
    )


__all__ = ["CommandResult", "run_command"]
