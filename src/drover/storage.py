"""File persistence helpers shared by the registry, batch store and audit log.

Every store follows the same contract: read fresh from disk on every call,
rewrite the whole document on every write. Writes go to a temporary file in
the destination directory and are moved into place with ``os.replace`` so a
concurrent reader sees either the old or the new document, never a torn one.
Two processes writing the same document still race (last writer wins).
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from .errors import RegistryError


def read_json(path: Path, default: Any) -> Any:
    """Load JSON from ``path``; return ``default`` when the file does not exist."""

    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    if not content.strip():
        return default
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        raise RegistryError(
            f"Store at {path} is not valid JSON: {exc}",
            hint=f"inspect or move {path} aside; it will be recreated on the next write",
        ) from exc


def write_json_atomic(path: Path, payload: Any) -> None:
    """Replace ``path`` with ``payload`` serialized as JSON."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    """Append one JSON record as a single line."""

    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, separators=(",", ":")) + "\n"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line)
        handle.flush()
        os.fsync(handle.fileno())


__all__ = ["append_jsonl", "read_json", "write_json_atomic"]
