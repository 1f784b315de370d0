"""Newline-delimited JSON framing over a raw byte stream."""

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

#: Max characters of a bad line to include in log output.
_PREVIEW_LEN = 200


class LineFramer:
    """Splits arriving byte chunks into parsed JSON values, one per line.

    The trailing partial line is kept until the next chunk completes it.
    Blank lines and lines that are not valid JSON are dropped without
    affecting the lines around them.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending_bytes(self) -> int:
        """Bytes held back waiting for a newline."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[Any]:
        """Append *chunk* and return every value completed by it, in order."""
        self._buffer.extend(chunk)
        if b"\n" not in chunk:
            return []

        *complete, rest = self._buffer.split(b"\n")
        self._buffer = bytearray(rest)

        values: list[Any] = []
        for raw in complete:
            line = raw.strip()
            if not line:
                continue
            try:
                values.append(json.loads(line.decode("utf-8")))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.warning(
                    "Dropping malformed frame: %r",
                    bytes(line[:_PREVIEW_LEN]),
                )
        return values

    def reset(self) -> None:
        """Discard any buffered partial line (used when a stream is replaced)."""
        self._buffer.clear()


def encode_frame(value: Any) -> bytes:
    """Serialise *value* as a single newline-terminated JSON line."""
    return json.dumps(value, separators=(",", ":")).encode("utf-8") + b"\n"
