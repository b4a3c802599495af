"""
Storage port for the persisted documents (registry, queue, status record).

Pipeline code only talks to a DocumentStore, so the JSON files can be swapped
for another backend without touching the registry or the queue.
"""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Protocol


class DocumentStore(Protocol):
    """A single named document: read the whole thing, replace the whole thing."""

    def read(self) -> Optional[Any]:
        """Return the stored document, or None if nothing has been stored.

        Raises ValueError if the stored bytes cannot be decoded.
        """
        ...

    def write(self, data: Any) -> None:
        ...

    def remove(self) -> None:
        ...


class JsonFileStore:
    """DocumentStore backed by a JSON file, replaced atomically on every write."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> Optional[Any]:
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return None
        return json.loads(text)

    def write(self, data: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Unique temp file per writer, then atomic rename: readers never see a partial document
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(json.dumps(data, indent=2, default=str))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def remove(self) -> None:
        self.path.unlink(missing_ok=True)

    def __repr__(self) -> str:
        return f"JsonFileStore({str(self.path)!r})"
