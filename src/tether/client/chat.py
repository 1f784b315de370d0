"""Chat session logic, independent of any UI.

``ChatController`` owns one remote session: it spawns it, polls its output,
forwards user input, and spawns a replacement after a reconnect. A UI only
renders ``controller.messages`` / ``controller.status`` and calls ``submit``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from tether.errors import TetherError
from tether.rpc.client import RpcClient
from tether.rpc.connection import ConnectionState

logger = logging.getLogger(__name__)

#: Inputs that end the chat.
QUIT_COMMANDS = frozenset({"/quit", "/exit", "/q"})

#: Seconds allowed for one get-output poll.
POLL_TIMEOUT = 5.0

ChatRole = Literal["user", "assistant", "system", "tool"]
ChatStatus = Literal["connecting", "spawning", "ready", "error", "closed"]


@dataclass
class ChatMessage:
    role: ChatRole
    content: str
    timestamp: float = field(default_factory=time.time)


def _content_blocks(event: dict[str, Any]) -> list[Any] | str | None:
    message = event.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, (str, list)):
        return content
    return None


def extract_text(event: dict[str, Any]) -> str | None:
    """Text of an assistant event: a string body, or text blocks joined by newlines."""
    content = _content_blocks(event)
    if content is None:
        return None
    if isinstance(content, str):
        return content or None
    texts = [
        block["text"]
        for block in content
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
    ]
    return "\n".join(texts) if texts else None


def extract_tool_names(event: dict[str, Any]) -> list[str]:
    """Names of the tool_use blocks in an assistant event."""
    content = _content_blocks(event)
    if not isinstance(content, list):
        return []
    return [
        block["name"]
        for block in content
        if isinstance(block, dict)
        and block.get("type") == "tool_use"
        and isinstance(block.get("name"), str)
    ]


class OutputPoller:
    """Calls ``ChatController.poll_once`` every ``interval`` seconds.

    The wait between polls ends early once ``shutdown_event`` is set. A
    failed poll is logged and the next one still runs.
    """

    def __init__(
        self,
        controller: ChatController,
        shutdown_event: asyncio.Event,
        interval: float,
    ) -> None:
        self._controller = controller
        self._shutdown_event = shutdown_event
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running or self._shutdown_event.is_set():
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _wait_for_shutdown(self) -> bool:
        """Wait one interval; ``True`` if shutdown was signalled meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), self._interval)
        except TimeoutError:
            return False
        return True

    async def _run(self) -> None:
        while not await self._wait_for_shutdown():
            try:
                await self._controller.poll_once()
            except Exception:
                logger.exception("Output poll failed")


class ChatController:
    """Drives one remote chat session over an ``RpcClient``.

    Args:
        client: Connected or connectable RPC client.
        directory: Directory the remote session runs in.
        poll_interval: Seconds between output polls.
        on_update: Called (synchronously) whenever visible state changes.
    """

    def __init__(
        self,
        client: RpcClient,
        directory: str,
        *,
        poll_interval: float = 0.5,
        on_update: Callable[[], None] | None = None,
    ) -> None:
        self._client = client
        self._directory = directory
        self.on_update = on_update

        self.status: ChatStatus = "connecting"
        self.error: str | None = None
        self.messages: list[ChatMessage] = []
        self.thinking = False
        self.session_id: str | None = None
        self.connection_state = client.connection_state
        self.reconnect_count = 0

        self._shutdown = asyncio.Event()
        self._poller = OutputPoller(self, self._shutdown, poll_interval)
        self._unsubscribe: Callable[[], None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def client(self) -> RpcClient:
        return self._client

    @property
    def directory(self) -> str:
        return self._directory

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Connect, spawn the first session and start polling.

        Failures land in ``status``/``error`` instead of raising.
        """
        if self._unsubscribe is None:
            self._unsubscribe = self._client.on_connection_change(
                self._on_connection_change
            )
        self._set_status("connecting")
        try:
            await self._client.ensure_connected()
        except TetherError as exc:
            self._fail(str(exc))
            return

        session_id = await self._spawn()
        if session_id is None:
            return
        self.session_id = session_id
        self._set_status("ready")
        await self._poller.start()

    async def close(self) -> None:
        """Stop polling and ask the daemon to stop the session."""
        self._shutdown.set()
        await self._poller.stop()
        for task in list(self._tasks):
            task.cancel()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        session_id, self.session_id = self.session_id, None
        if session_id is not None and self.connection_state is ConnectionState.CONNECTED:
            try:
                await self._client.call(
                    "stop-session", {"sessionId": session_id}, timeout=POLL_TIMEOUT
                )
            except TetherError as exc:
                logger.debug("stop-session failed: %s", exc)
        self._set_status("closed")

    # ------------------------------------------------------------------ #
    # User input
    # ------------------------------------------------------------------ #

    async def submit(self, text: str) -> bool:
        """Handle one line of user input.

        Returns ``False`` when the input asked to quit (the session has
        already been stopped), ``True`` otherwise.
        """
        trimmed = text.strip()
        if trimmed in QUIT_COMMANDS:
            await self.close()
            return False
        if not trimmed or self.session_id is None:
            return True

        self._add("user", trimmed)
        self.thinking = True
        self._notify()
        try:
            result = await self._client.call(
                "send-message", {"sessionId": self.session_id, "text": trimmed}
            )
        except TetherError as exc:
            self._add("system", f"Error: {exc}")
            self.thinking = False
            self._notify()
            return True

        if isinstance(result, dict) and result.get("success") is False:
            self._add("system", f"Error: {result.get('error') or 'Failed to send message'}")
            self.thinking = False
            self._notify()
        return True

    # ------------------------------------------------------------------ #
    # Output polling
    # ------------------------------------------------------------------ #

    async def poll_once(self) -> None:
        """Fetch and render any new output. Errors are ignored."""
        session_id = self.session_id
        if session_id is None or self._client.connection_state is not ConnectionState.CONNECTED:
            return
        try:
            output = await self._client.call(
                "get-output",
                {"sessionId": session_id, "clear": True},
                timeout=POLL_TIMEOUT,
            )
        except TetherError as exc:
            logger.debug("Poll failed: %s", exc)
            return

        messages = output.get("messages") if isinstance(output, dict) else None
        if not messages:
            return
        for item in messages:
            self._handle_output(item)
        self._notify()

    def _handle_output(self, item: Any) -> None:
        if not isinstance(item, dict) or item.get("type") != "session-output":
            return
        event = item.get("data")
        if not isinstance(event, dict) or event.get("type") != "assistant":
            return

        text = extract_text(event)
        if text:
            self._add("assistant", text)
            self.thinking = False
        for name in extract_tool_names(event):
            self._add("tool", name)

    # ------------------------------------------------------------------ #
    # Session spawning
    # ------------------------------------------------------------------ #

    async def _spawn(self) -> str | None:
        self._set_status("spawning")
        try:
            result = await self._client.call(
                "spawn-session",
                {"directory": self._directory, "sessionId": str(uuid.uuid4())},
            )
        except TetherError as exc:
            self._fail(str(exc))
            return None

        if isinstance(result, dict) and result.get("type") == "success":
            session_id = result.get("sessionId")
            if isinstance(session_id, str) and session_id:
                return session_id
        message = result.get("errorMessage") if isinstance(result, dict) else None
        self._fail(message or "Failed to spawn session")
        return None

    async def _respawn(self) -> None:
        session_id = await self._spawn()
        if session_id is None:
            return
        self.session_id = session_id
        self._set_status("ready")
        self._add("system", "New session ready.")
        self._notify()

    def _on_connection_change(self, state: ConnectionState) -> None:
        self.connection_state = state
        if state is ConnectionState.CONNECTED:
            self.reconnect_count += 1
            if self.session_id is not None and not self._shutdown.is_set():
                self._add("system", "Reconnected to server. Spawning new session...")
                task = asyncio.create_task(self._respawn())
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        elif state is ConnectionState.DISCONNECTED and self.session_id is not None:
            if not self._shutdown.is_set():
                self._add("system", "Connection lost. Attempting to reconnect...")
        self._notify()

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _add(self, role: ChatRole, content: str) -> None:
        self.messages.append(ChatMessage(role=role, content=content))

    def _set_status(self, status: ChatStatus) -> None:
        self.status = status
        self._notify()

    def _fail(self, message: str) -> None:
        self.error = message
        self._set_status("error")

    def _notify(self) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update()
        except Exception:
            logger.exception("Chat update callback failed")
