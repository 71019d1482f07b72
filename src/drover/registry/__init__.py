"""Durable worker registry."""

from .models import TerminalRef, Worker
from .store import WorkerRegistry

__all__ = ["TerminalRef", "Worker", "WorkerRegistry"]
