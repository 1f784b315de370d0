"""Key/value stores backing a transport's discovery records."""

from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    """Minimal put/get storage for discovery records."""

    def put(self, key: str, value: bytes) -> None: ...

    def get(self, key: str) -> bytes | None: ...


class MemoryRecordStore:
    """Process-local record store."""

    def __init__(self) -> None:
        self._records: dict[str, bytes] = {}

    def put(self, key: str, value: bytes) -> None:
        self._records[key] = bytes(value)

    def get(self, key: str) -> bytes | None:
        return self._records.get(key)


class FileRecordStore:
    """Record store persisted as a single JSON file.

    Values are base64-encoded. Writes go to a temp file in the same
    directory and are renamed into place so readers never see a torn file.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def put(self, key: str, value: bytes) -> None:
        records = self._load()
        records[key] = base64.b64encode(value).decode("ascii")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(records, fh)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> bytes | None:
        encoded = self._load().get(key)
        if encoded is None:
            return None
        return base64.b64decode(encoded)

    def _load(self) -> dict[str, str]:
        if not self._path.is_file():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable record file %s: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}
