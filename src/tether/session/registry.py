"""Tracks live agent sessions and their buffered output."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tether.session.models import (
    SendMessageResult,
    SessionOutput,
    SessionRecord,
    SessionSummary,
    SpawnSessionFailure,
    SpawnSessionResult,
    SpawnSessionSuccess,
)
from tether.session.process import AgentProcess, ProcessInputClosed

logger = logging.getLogger(__name__)

#: Default hard cap on buffered events per session.
DEFAULT_BUFFER_CAP = 1000

#: Starts an agent: ``(directory, permission_mode, model) -> process``.
ProcessSpawner = Callable[[Path, str, str | None], Awaitable[AgentProcess]]


def _now_ms() -> int:
    return int(time.time() * 1000)


class OutputBuffer:
    """Bounded, ordered event buffer.

    When an append pushes it past ``cap`` entries, only the newest
    ``cap // 2`` are kept.
    """

    def __init__(self, cap: int = DEFAULT_BUFFER_CAP) -> None:
        if cap < 2:
            msg = f"Buffer cap must be at least 2, got {cap}"
            raise ValueError(msg)
        self._cap = cap
        self._items: list[SessionOutput] = []

    @property
    def cap(self) -> int:
        return self._cap

    def append(self, item: SessionOutput) -> None:
        self._items.append(item)
        if len(self._items) > self._cap:
            del self._items[: len(self._items) - self._cap // 2]

    def snapshot(self, *, clear: bool = False) -> list[SessionOutput]:
        """Copy of the buffer, emptied in the same step when *clear* is set."""
        items = list(self._items)
        if clear:
            self._items.clear()
        return items

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class TrackedSession:
    session_id: str
    process: AgentProcess
    directory: str
    buffer: OutputBuffer
    created_at: int = field(default_factory=_now_ms)

    @property
    def pid(self) -> int:
        return self.process.pid

    def summary(self) -> SessionSummary:
        return SessionSummary(
            session_id=self.session_id, pid=self.pid, created_at=self.created_at
        )

    def record(self) -> SessionRecord:
        return SessionRecord(
            session_id=self.session_id,
            pid=self.pid,
            created_at=self.created_at,
            directory=self.directory,
        )


class SessionRegistry:
    """Owns every ``TrackedSession``; nothing else mutates the session map.

    Args:
        spawner: Starts the agent process for a new session.
        root_dir: When set, sessions may only be spawned in this directory
            or below it.
        buffer_cap: Per-session output buffer cap.
        default_permission_mode: Used when a spawn request names none.
        default_model: Used when a spawn request names none.
        on_change: Called after every spawn, stop, and process exit.
    """

    def __init__(
        self,
        spawner: ProcessSpawner,
        *,
        root_dir: Path | None = None,
        buffer_cap: int = DEFAULT_BUFFER_CAP,
        default_permission_mode: str = "acceptEdits",
        default_model: str | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._spawner = spawner
        self._root_dir = root_dir.expanduser().resolve() if root_dir else None
        self._buffer_cap = buffer_cap
        self._default_permission_mode = default_permission_mode
        self._default_model = default_model
        self._on_change = on_change
        self._sessions: dict[str, TrackedSession] = {}
        # Ids whose spawn is still in flight.
        self._reserved: set[str] = set()

    @property
    def root_dir(self) -> Path | None:
        return self._root_dir

    def is_allowed(self, directory: str | Path) -> bool:
        """Whether *directory* passes the root-directory policy."""
        if self._root_dir is None:
            return True
        resolved = Path(directory).expanduser().resolve()
        return resolved.is_relative_to(self._root_dir)

    async def spawn(
        self,
        directory: str,
        session_id: str | None = None,
        permission_mode: str | None = None,
        model: str | None = None,
    ) -> SpawnSessionResult:
        sid = session_id or str(uuid.uuid4())
        if not self.is_allowed(directory):
            logger.warning("Rejected spawn outside root: %s", directory)
            return SpawnSessionFailure(
                error_message=f"Directory {directory} is outside allowed root: {self._root_dir}"
            )
        if sid in self._sessions or sid in self._reserved:
            return SpawnSessionFailure(error_message=f"Session {sid} already exists")

        mode = permission_mode or self._default_permission_mode
        self._reserved.add(sid)
        try:
            process = await self._spawner(
                Path(directory).expanduser(), mode, model or self._default_model
            )
        except Exception as exc:
            logger.warning("Failed to spawn session %s: %s", sid, exc)
            return SpawnSessionFailure(error_message=str(exc) or "Failed to spawn session")
        finally:
            self._reserved.discard(sid)

        tracked = TrackedSession(
            session_id=sid,
            process=process,
            directory=directory,
            buffer=OutputBuffer(self._buffer_cap),
        )
        self._sessions[sid] = tracked
        process.on_output(lambda message: self._append(tracked, message))
        process.on_exit(lambda code: self._on_exit(tracked, code))

        logger.info("Spawned session %s (pid %d) in %s", sid, tracked.pid, directory)
        self._changed()
        return SpawnSessionSuccess(session_id=sid, pid=tracked.pid)

    async def send(self, session_id: str, text: str) -> SendMessageResult:
        tracked = self._sessions.get(session_id)
        if tracked is None:
            return SendMessageResult(success=False, error="Session not found")
        try:
            await tracked.process.send(text)
        except ProcessInputClosed as exc:
            return SendMessageResult(success=False, error=str(exc))
        return SendMessageResult(success=True)

    def poll(self, session_id: str, *, clear: bool = False) -> list[SessionOutput]:
        tracked = self._sessions.get(session_id)
        if tracked is None:
            return []
        return tracked.buffer.snapshot(clear=clear)

    def stop(self, session_id: str) -> bool:
        tracked = self._sessions.pop(session_id, None)
        if tracked is None:
            return False
        tracked.process.terminate()
        logger.info("Stopped session %s", session_id)
        self._changed()
        return True

    def list_sessions(self) -> list[SessionSummary]:
        return [tracked.summary() for tracked in self._sessions.values()]

    def records(self) -> list[SessionRecord]:
        return [tracked.record() for tracked in self._sessions.values()]

    def get(self, session_id: str) -> TrackedSession | None:
        return self._sessions.get(session_id)

    def stop_all(self) -> None:
        """Terminate every session without firing change notifications."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for tracked in sessions:
            tracked.process.terminate()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _append(self, tracked: TrackedSession, message: dict[str, Any]) -> None:
        tracked.buffer.append(SessionOutput(data=message, timestamp=_now_ms()))

    def _on_exit(self, tracked: TrackedSession, code: int | None) -> None:
        logger.info("Session %s exited (code %s)", tracked.session_id, code)
        if self._sessions.get(tracked.session_id) is tracked:
            del self._sessions[tracked.session_id]
            self._changed()

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception:
            logger.exception("Session change callback failed")
