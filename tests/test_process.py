"""Tests for the Claude subprocess adapter."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fakes import wait_until
from tether.session.process import (
    ENTRYPOINT,
    ClaudeProcess,
    ProcessInputClosed,
    build_claude_args,
    find_claude_path,
)

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


class MockAsyncStream:
    """Async-aware mock stream that yields lines on demand.

    ``readline()`` blocks until a line is fed or ``close()`` is called.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes | Exception] = asyncio.Queue()

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def feed_error(self, exc: Exception) -> None:
        self._queue.put_nowait(exc)

    def close(self) -> None:
        """Signal EOF."""
        self._queue.put_nowait(b"")

    async def readline(self) -> bytes:
        item = await self._queue.get()
        if isinstance(item, Exception):
            raise item
        return item


def _make_mock_process(returncode: int = 0) -> tuple[MagicMock, MockAsyncStream, asyncio.Event]:
    """Create a mock subprocess. Set the returned event to make it exit."""
    exited = asyncio.Event()
    stdout = MockAsyncStream()
    stderr = MockAsyncStream()
    stderr.close()

    proc = MagicMock()
    proc.pid = 4321
    proc.returncode = None

    stdin = MagicMock()
    stdin.write = MagicMock()
    stdin.drain = AsyncMock()
    stdin.is_closing = MagicMock(return_value=False)
    proc.stdin = stdin
    proc.stdout = stdout
    proc.stderr = stderr

    async def _wait() -> int:
        await exited.wait()
        proc.returncode = returncode
        return returncode

    proc.wait = _wait
    proc.terminate = MagicMock()
    return proc, stdout, exited


def _line(event: dict[str, Any]) -> bytes:
    return json.dumps(event).encode() + b"\n"


def _started(proc: MagicMock) -> ClaudeProcess:
    process = ClaudeProcess(proc)
    process.start()
    return process


# ================================================================== #
# Executable discovery and arguments
# ================================================================== #


class TestFindClaudePath:
    def test_explicit_wins(self) -> None:
        with patch("shutil.which", return_value="/usr/bin/claude"):
            assert find_claude_path("/opt/claude") == "/opt/claude"

    def test_path_lookup(self) -> None:
        with patch("shutil.which", return_value="/usr/bin/claude"):
            assert find_claude_path() == "/usr/bin/claude"

    def test_known_location(self, tmp_path: Path) -> None:
        candidate = tmp_path / "claude"
        candidate.write_text("#!/bin/sh\n")
        candidate.chmod(0o755)
        with (
            patch("shutil.which", return_value=None),
            patch("tether.session.process._known_locations", return_value=[tmp_path / "missing", candidate]),
        ):
            assert find_claude_path() == str(candidate)

    def test_falls_back_to_bare_name(self) -> None:
        with (
            patch("shutil.which", return_value=None),
            patch("tether.session.process._known_locations", return_value=[]),
        ):
            assert find_claude_path() == "claude"


class TestBuildArgs:
    def test_stream_json_both_ways(self) -> None:
        args = build_claude_args()
        assert args[args.index("--output-format") + 1] == "stream-json"
        assert args[args.index("--input-format") + 1] == "stream-json"
        assert "--verbose" in args
        assert args[args.index("--permission-mode") + 1] == "acceptEdits"

    def test_model_and_turns(self) -> None:
        args = build_claude_args("plan", "opus", 5)
        assert args[-4:] == ["--model", "opus", "--max-turns", "5"]
        assert args[args.index("--permission-mode") + 1] == "plan"

    def test_optional_flags_omitted(self) -> None:
        args = build_claude_args()
        assert "--model" not in args
        assert "--max-turns" not in args


# ================================================================== #
# Spawning
# ================================================================== #


class TestSpawn:
    async def test_spawn_arguments(self, tmp_path: Path) -> None:
        proc, stdout, exited = _make_mock_process()
        with patch("asyncio.create_subprocess_exec", return_value=proc) as create:
            process = await ClaudeProcess.spawn(
                tmp_path, "plan", "sonnet", command="/opt/claude"
            )

        args, kwargs = create.call_args
        assert args[0] == "/opt/claude"
        assert "--model" in args
        assert kwargs["cwd"] == str(tmp_path)
        assert kwargs["start_new_session"] is True
        assert kwargs["limit"] == 1_048_576
        assert kwargs["env"]["CLAUDE_CODE_ENTRYPOINT"] == ENTRYPOINT
        assert process.pid == 4321

        stdout.close()
        exited.set()
        await process.wait()

    async def test_missing_executable_propagates(self, tmp_path: Path) -> None:
        with (
            patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("claude")),
            pytest.raises(FileNotFoundError),
        ):
            await ClaudeProcess.spawn(tmp_path, command="/nonexistent/claude")


# ================================================================== #
# Output and exit
# ================================================================== #


class TestOutput:
    async def test_emits_json_objects_in_order(self) -> None:
        proc, stdout, exited = _make_mock_process()
        process = _started(proc)
        seen: list[dict[str, Any]] = []
        process.on_output(seen.append)

        stdout.feed(_line({"type": "system"}))
        stdout.feed(b"plain log line\n")
        stdout.feed(b"[1, 2, 3]\n")
        stdout.feed(b"\n")
        stdout.feed(_line({"type": "assistant"}))
        await wait_until(lambda: len(seen) == 2)

        assert [e["type"] for e in seen] == ["system", "assistant"]
        stdout.close()
        exited.set()
        await process.wait()

    async def test_oversized_line_skipped(self) -> None:
        proc, stdout, exited = _make_mock_process()
        process = _started(proc)
        seen: list[dict[str, Any]] = []
        process.on_output(seen.append)

        stdout.feed_error(ValueError("Separator is not found, and chunk exceed the limit"))
        stdout.feed(_line({"type": "after"}))
        await wait_until(lambda: len(seen) == 1)

        assert seen[0]["type"] == "after"
        stdout.close()
        exited.set()
        await process.wait()

    async def test_callback_errors_do_not_stop_fan_out(self) -> None:
        proc, stdout, exited = _make_mock_process()
        process = _started(proc)
        seen: list[dict[str, Any]] = []

        def _broken(event: dict[str, Any]) -> None:
            raise RuntimeError("bad observer")

        process.on_output(_broken)
        process.on_output(seen.append)
        stdout.feed(_line({"type": "x"}))
        await wait_until(lambda: len(seen) == 1)

        stdout.close()
        exited.set()
        await process.wait()


class TestExit:
    async def test_exit_fires_once_after_output(self) -> None:
        proc, stdout, exited = _make_mock_process(returncode=3)
        process = _started(proc)
        order: list[str] = []
        codes: list[int | None] = []
        process.on_output(lambda e: order.append("output"))
        process.on_exit(lambda code: (order.append("exit"), codes.append(code)))

        stdout.feed(_line({"type": "result"}))
        stdout.close()
        exited.set()
        assert await process.wait() == 3

        assert order == ["output", "exit"]
        assert codes == [3]
        assert process.exited

    async def test_late_exit_subscriber_still_notified(self) -> None:
        proc, stdout, exited = _make_mock_process(returncode=0)
        process = _started(proc)
        stdout.close()
        exited.set()
        await process.wait()

        codes: list[int | None] = []
        process.on_exit(codes.append)
        await asyncio.sleep(0)
        assert codes == [0]


# ================================================================== #
# Input and termination
# ================================================================== #


class TestSendAndTerminate:
    async def test_send_writes_user_message(self) -> None:
        proc, stdout, exited = _make_mock_process()
        process = _started(proc)

        await process.send("hello")

        written = proc.stdin.write.call_args[0][0]
        assert written.endswith(b"\n")
        assert json.loads(written) == {
            "type": "user",
            "message": {"role": "user", "content": "hello"},
        }
        stdout.close()
        exited.set()
        await process.wait()

    async def test_send_on_broken_pipe(self) -> None:
        proc, stdout, exited = _make_mock_process()
        proc.stdin.drain = AsyncMock(side_effect=BrokenPipeError())
        process = _started(proc)

        with pytest.raises(ProcessInputClosed):
            await process.send("hello")
        stdout.close()
        exited.set()
        await process.wait()

    async def test_send_after_exit(self) -> None:
        proc, stdout, exited = _make_mock_process()
        process = _started(proc)
        stdout.close()
        exited.set()
        await process.wait()

        with pytest.raises(ProcessInputClosed, match="Session input is closed"):
            await process.send("too late")

    async def test_terminate_signals_once(self) -> None:
        proc, stdout, exited = _make_mock_process()
        process = _started(proc)

        process.terminate()
        process.terminate()

        proc.terminate.assert_called_once()
        stdout.close()
        exited.set()
        await process.wait()


# ================================================================== #
# Real subprocess
# ================================================================== #

_FAKE_CLAUDE = """\
#!{python}
import json
import sys

print(json.dumps({{"type": "system", "subtype": "init", "args": sys.argv[1:]}}), flush=True)
for line in sys.stdin:
    text = json.loads(line)["message"]["content"]
    reply = {{"type": "assistant", "message": {{"content": [{{"type": "text", "text": "echo: " + text}}]}}}}
    print(json.dumps(reply), flush=True)
    if text == "bye":
        break
"""


@pytest.mark.skipif(sys.platform == "win32", reason="needs a shebang script")
class TestRealSubprocess:
    async def test_conversation_with_script(self, tmp_path: Path) -> None:
        script = tmp_path / "fake-claude"
        script.write_text(_FAKE_CLAUDE.format(python=sys.executable))
        script.chmod(0o755)

        process = await ClaudeProcess.spawn(tmp_path, "plan", command=str(script))
        seen: list[dict[str, Any]] = []
        codes: list[int | None] = []
        process.on_output(seen.append)
        process.on_exit(codes.append)

        await process.send("hi")
        await wait_until(lambda: len(seen) == 2, timeout=10.0)
        await process.send("bye")
        assert await asyncio.wait_for(process.wait(), timeout=10.0) == 0

        assert seen[0]["type"] == "system"
        assert "--permission-mode" in seen[0]["args"]
        assert seen[1]["message"]["content"][0]["text"] == "echo: hi"
        assert seen[-1]["message"]["content"][0]["text"] == "echo: bye"
        assert codes == [0]
