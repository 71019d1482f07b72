"""Append-only JSONL audit log of approval decisions."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from ..storage import append_jsonl

logger = logging.getLogger(__name__)


class AuditLog:
    """One JSON object per line, newest last."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def append(self, record: dict[str, Any]) -> None:
        append_jsonl(self._path, record)

    def read(self) -> list[dict[str, Any]]:
        try:
            content = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        records: list[dict[str, Any]] = []
        for number, line in enumerate(content.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping malformed audit line", extra={"path": str(self._path), "line": number})
        return records

    def tail(self, limit: int = 20) -> list[dict[str, Any]]:
        return self.read()[-limit:]


__all__ = ["AuditLog"]
