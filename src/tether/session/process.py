"""Claude CLI subprocess adapter speaking stream-json on stdin/stdout."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from tether.errors import TetherError

logger = logging.getLogger(__name__)

#: Maximum bytes per JSONL line from subprocess stdout (1 MB).
_MAX_LINE_BYTES = 1_048_576

#: Seconds to let stdout drain after the process is reaped.
_EXIT_DRAIN_WAIT = 2.0

#: Value of ``CLAUDE_CODE_ENTRYPOINT`` for daemon-spawned sessions.
ENTRYPOINT = "tether-daemon"

#: Fixed flags for a long-lived, bidirectional stream-json session.
_BASE_ARGS = (
    "--output-format",
    "stream-json",
    "--input-format",
    "stream-json",
    "--verbose",
)

OutputCallback = Callable[[dict[str, Any]], None]
ExitCallback = Callable[[int | None], None]


class ProcessInputClosed(TetherError):
    """The agent's stdin is gone; the message was not delivered."""


class AgentProcess(Protocol):
    """What the session registry needs from a running agent."""

    @property
    def pid(self) -> int: ...

    def on_output(self, callback: OutputCallback) -> None: ...

    def on_exit(self, callback: ExitCallback) -> None: ...

    async def send(self, text: str) -> None: ...

    def terminate(self) -> None: ...


def _known_locations() -> list[Path]:
    home = Path.home()
    return [
        Path("/usr/local/bin/claude"),
        Path("/opt/homebrew/bin/claude"),
        home / ".npm-global" / "bin" / "claude",
        home / "node_modules" / ".bin" / "claude",
        home / ".claude" / "local" / "claude",
    ]


def find_claude_path(explicit: str | None = None) -> str:
    """Locate the Claude CLI executable.

    Order: *explicit*, ``$PATH``, well-known install locations, and finally
    the bare name ``claude`` (left for the OS to resolve or fail on).
    """
    if explicit:
        return explicit
    found = shutil.which("claude")
    if found:
        return found
    for location in _known_locations():
        if location.is_file() and os.access(location, os.X_OK):
            return str(location)
    return "claude"


def build_claude_args(
    permission_mode: str = "acceptEdits",
    model: str | None = None,
    max_turns: int | None = None,
) -> list[str]:
    args = [*_BASE_ARGS, "--permission-mode", permission_mode]
    if model:
        args.extend(["--model", model])
    if max_turns:
        args.extend(["--max-turns", str(max_turns)])
    return args


class ClaudeProcess:
    """A running ``claude`` subprocess.

    Every stdout line that parses as a JSON object is fanned out to the
    output callbacks in arrival order. Exit callbacks fire exactly once,
    after the process is reaped and its stdout drained.
    """

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        self._output_callbacks: list[OutputCallback] = []
        self._exit_callbacks: list[ExitCallback] = []
        self._exited = False
        self._terminated = False
        self._stdout_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[None] | None = None

    @classmethod
    async def spawn(
        cls,
        cwd: Path,
        permission_mode: str = "acceptEdits",
        model: str | None = None,
        *,
        command: str | None = None,
        max_turns: int | None = None,
    ) -> ClaudeProcess:
        """Start ``claude`` in *cwd* and begin reading its output.

        Raises:
            FileNotFoundError: The executable or *cwd* does not exist.
            OSError: The process could not be started.
        """
        executable = find_claude_path(command)
        args = build_claude_args(permission_mode, model, max_turns)
        env = {**os.environ, "CLAUDE_CODE_ENTRYPOINT": ENTRYPOINT}

        logger.info("Spawning %s %s in %s", executable, " ".join(args), cwd)
        proc = await asyncio.create_subprocess_exec(
            executable,
            *args,
            cwd=str(cwd),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_MAX_LINE_BYTES,
            env=env,
            start_new_session=True,
        )
        process = cls(proc)
        process.start()
        return process

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def exited(self) -> bool:
        return self._exited

    def start(self) -> None:
        """Start the stdout/stderr readers and the exit watcher."""
        if self._exit_task is not None:
            return
        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._exit_task = asyncio.create_task(self._watch_exit())

    # ------------------------------------------------------------------ #
    # Observers
    # ------------------------------------------------------------------ #

    def on_output(self, callback: OutputCallback) -> None:
        self._output_callbacks.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        if self._exited:
            asyncio.get_running_loop().call_soon(callback, self._proc.returncode)
            return
        self._exit_callbacks.append(callback)

    # ------------------------------------------------------------------ #
    # Input / termination
    # ------------------------------------------------------------------ #

    async def send(self, text: str) -> None:
        """Write one user turn to the agent's stdin.

        Raises:
            ProcessInputClosed: stdin is closed or the process has exited.
        """
        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing() or self._exited:
            msg = "Session input is closed"
            raise ProcessInputClosed(msg)

        message = {"type": "user", "message": {"role": "user", "content": text}}
        try:
            stdin.write((json.dumps(message) + "\n").encode())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as exc:
            msg = f"Session input is closed: {exc}"
            raise ProcessInputClosed(msg) from exc

    def terminate(self) -> None:
        """Send SIGTERM once. Later calls do nothing."""
        if self._terminated or self._proc.returncode is not None:
            return
        self._terminated = True
        with contextlib.suppress(ProcessLookupError):
            self._proc.terminate()

    async def wait(self) -> int | None:
        """Wait until exit callbacks have fired and return the exit code."""
        if self._exit_task is not None:
            await asyncio.shield(self._exit_task)
        return self._proc.returncode

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    async def _read_stdout(self) -> None:
        stdout = self._proc.stdout
        if stdout is None:
            return
        while True:
            try:
                line_bytes = await stdout.readline()
            except ValueError:
                # Line exceeded StreamReader buffer limit; skip and keep reading.
                logger.warning("pid %d: stdout line exceeded buffer limit, skipping", self.pid)
                continue
            except (ConnectionError, OSError) as exc:
                logger.debug("pid %d: stdout read failed: %s", self.pid, exc)
                return
            if not line_bytes:
                return

            line = line_bytes.decode(errors="replace").strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("pid %d stdout: %s", self.pid, line[:200])
                continue
            if isinstance(message, dict):
                self._emit(message)

    async def _drain_stderr(self) -> None:
        stderr = self._proc.stderr
        if stderr is None:
            return
        with contextlib.suppress(ConnectionError, OSError):
            while True:
                chunk = await stderr.readline()
                if not chunk:
                    return
                logger.debug(
                    "pid %d stderr: %s", self.pid, chunk.decode(errors="replace").rstrip()
                )

    async def _watch_exit(self) -> None:
        returncode = await self._proc.wait()
        if self._stdout_task is not None:
            await asyncio.wait({self._stdout_task}, timeout=_EXIT_DRAIN_WAIT)
        self._exited = True
        logger.info("pid %d exited with code %s", self.pid, returncode)

        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            try:
                callback(returncode)
            except Exception:
                logger.exception("Exit callback failed for pid %d", self.pid)

    def _emit(self, message: dict[str, Any]) -> None:
        for callback in list(self._output_callbacks):
            try:
                callback(message)
            except Exception:
                logger.exception("Output callback failed for pid %d", self.pid)
