"""One JSON document per batch under the state directory."""

from __future__ import annotations

import re
from pathlib import Path

from pydantic import ValidationError

from ..errors import NotFoundError, RegistryError
from ..storage import read_json, write_json_atomic
from .models import Batch

_BATCH_FILE_RE = re.compile(r"^batch-(\d+)\.json$")


class BatchStore:
    """Persist batches as ``batch-NNN.json``; ids come from a counter and are never reused."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, batch_id: str) -> Path:
        return self._directory / f"{batch_id}.json"

    def next_id(self) -> str:
        counter_path = self._directory / ".counter"
        current = read_json(counter_path, None)
        if not isinstance(current, int):
            current = max(self._existing_numbers(), default=0)
        value = current + 1
        write_json_atomic(counter_path, value)
        return f"batch-{value:03d}"

    def _existing_numbers(self) -> list[int]:
        if not self._directory.exists():
            return []
        numbers = []
        for path in self._directory.iterdir():
            match = _BATCH_FILE_RE.match(path.name)
            if match:
                numbers.append(int(match.group(1)))
        return numbers

    def save(self, batch: Batch) -> None:
        write_json_atomic(self._path(batch.id), batch.model_dump(mode="json"))

    def load(self, batch_id: str) -> Batch:
        path = self._path(batch_id)
        document = read_json(path, None)
        if document is None:
            raise NotFoundError(
                f"Batch '{batch_id}' not found",
                hint="run `drover batch list` to see known batches",
            )
        try:
            return Batch.model_validate(document)
        except ValidationError as exc:
            raise RegistryError(f"Batch file {path} is invalid: {exc}") from exc

    def list(self) -> list[Batch]:
        numbers = sorted(self._existing_numbers())
        return [self.load(f"batch-{number:03d}") for number in numbers]


__all__ = ["BatchStore"]
