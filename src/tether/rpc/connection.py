"""Connection lifecycle for the RPC client: connect, back off and reconnect.

State machine::

    disconnected --connect--> connecting --success--> connected
    connecting   --failure--> disconnected
    connected    --error/EOF-> disconnected

All state lives on the event loop thread; nothing here takes a lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from tether.errors import (
    ConnectFailedError,
    ConnectionClosedError,
    ConnectionTimeout,
    TransportError,
)
from tether.rpc.framing import LineFramer, encode_frame
from tether.transport.base import Channel, TransportProvider

logger = logging.getLogger(__name__)


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


#: Listener notified synchronously on every state transition.
StateListener = Callable[[ConnectionState], None]


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential reconnect schedule: ``min(base * 2**attempt, max)``."""

    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = 10

    def delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect attempt number *attempt* (0-based)."""
        return min(self.base_delay * (2**attempt), self.max_delay)


class FrameHandler(Protocol):
    """Receiver of inbound frames and connection-loss notices."""

    def handle_frame(self, frame: Any) -> None: ...

    def connection_lost(self, exc: ConnectionClosedError) -> None: ...


class ConnectionManager:
    """Owns one logical client connection to a peer.

    * Concurrent ``ensure_connected`` callers share a single in-flight
      attempt.
    * A connection that drops after having succeeded is retried on the
      ``BackoffPolicy`` schedule until ``max_attempts`` consecutive failures,
      after which only ``reconnect()`` will try again.
    * Listener exceptions are logged and never interrupt the fan-out.
    """

    def __init__(
        self,
        transport: TransportProvider,
        peer_id: str,
        *,
        connect_timeout: float = 10.0,
        backoff: BackoffPolicy | None = None,
        auto_reconnect: bool = True,
    ) -> None:
        self._transport = transport
        self._peer_id = peer_id
        self._connect_timeout = connect_timeout
        self._backoff = backoff or BackoffPolicy()
        self._auto_reconnect = auto_reconnect

        self._state = ConnectionState.DISCONNECTED
        self._listeners: list[StateListener] = []
        self._handler: FrameHandler | None = None
        self._framer = LineFramer()

        self._channel: Channel | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[None] | None = None

        # Reconnect bookkeeping.
        self._ever_connected = False
        self._attempts = 0
        self._last_retry_delay: float | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._gave_up = False
        self._closed = False

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def peer_id(self) -> str:
        return self._peer_id

    @property
    def reconnect_attempts(self) -> int:
        """Reconnect attempts scheduled since the last successful connect."""
        return self._attempts

    @property
    def last_retry_delay(self) -> float | None:
        """Delay (seconds) used for the most recently scheduled retry."""
        return self._last_retry_delay

    @property
    def retry_pending(self) -> bool:
        """True while an automatic retry is waiting for its timer."""
        return self._retry_handle is not None

    @property
    def gave_up(self) -> bool:
        """True once the retry budget is exhausted (until ``reconnect()``)."""
        return self._gave_up

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #

    def set_frame_handler(self, handler: FrameHandler) -> None:
        """Route inbound frames and loss notices to *handler*."""
        self._handler = handler

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener. Returns a function that unregisters it."""
        self._listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    # ------------------------------------------------------------------ #
    # Connect / reconnect / close
    # ------------------------------------------------------------------ #

    async def ensure_connected(self) -> None:
        """Return once connected, joining any attempt already in flight.

        Raises:
            ConnectFailedError: The attempt failed (``ConnectionTimeout``
                when it hit the connect deadline).
            ConnectionClosedError: The manager has been closed.
        """
        if self._closed:
            msg = "Connection manager is closed"
            raise ConnectionClosedError(msg)
        if self._state is ConnectionState.CONNECTED and self._channel is not None:
            return

        if self._connect_task is None:
            task = asyncio.create_task(self._connect())
            task.add_done_callback(self._connect_done)
            self._connect_task = task
        # Shield so one impatient caller cannot cancel the shared attempt.
        try:
            await asyncio.shield(self._connect_task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # The shared attempt was cancelled by close(), not this caller.
            msg = "Connection manager is closed"
            raise ConnectionClosedError(msg) from None

    async def reconnect(self) -> None:
        """Manual reconnect: drop any backoff state and try right away."""
        if self._closed:
            msg = "Connection manager is closed"
            raise ConnectionClosedError(msg)
        self._cancel_retry()
        self._attempts = 0
        self._gave_up = False
        try:
            await self.ensure_connected()
        except ConnectFailedError:
            if self._ever_connected and self._auto_reconnect:
                self._schedule_reconnect()
            raise

    async def write(self, frame: Any) -> None:
        """Send one frame on the current connection.

        Raises:
            ConnectionClosedError: Not connected, or the write failed (which
                also tears the connection down).
        """
        channel = self._channel
        if channel is None or self._state is not ConnectionState.CONNECTED:
            msg = "Not connected"
            raise ConnectionClosedError(msg)
        try:
            await channel.write(encode_frame(frame))
        except (TransportError, OSError) as exc:
            await self._teardown(channel, exc)
            msg = f"Connection closed: {exc}"
            raise ConnectionClosedError(msg) from exc

    async def close(self) -> None:
        """Close for good. Pending calls fail; no further retries happen."""
        if self._closed:
            return
        self._closed = True
        self._cancel_retry()

        for task in (self._retry_task, self._connect_task):
            if task is not None and not task.done():
                task.cancel()

        channel = self._channel
        self._channel = None
        reader = self._reader_task
        self._reader_task = None
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        self._notify_lost(ConnectionClosedError("Connection closed by client"))
        self._set_state(ConnectionState.DISCONNECTED)
        if channel is not None:
            await channel.close()

    # ------------------------------------------------------------------ #
    # Internal: connecting
    # ------------------------------------------------------------------ #

    async def _connect(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        try:
            channel = await asyncio.wait_for(
                self._transport.connect(self._peer_id),
                timeout=self._connect_timeout,
            )
        except TimeoutError as exc:
            self._set_state(ConnectionState.DISCONNECTED)
            msg = f"Connection timeout after {self._connect_timeout:g}s"
            raise ConnectionTimeout(msg) from exc
        except asyncio.CancelledError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        except Exception as exc:
            self._set_state(ConnectionState.DISCONNECTED)
            msg = f"Connect failed: {exc}"
            raise ConnectFailedError(msg) from exc

        if self._closed:
            await channel.close()
            self._set_state(ConnectionState.DISCONNECTED)
            msg = "Connection manager is closed"
            raise ConnectionClosedError(msg)

        self._channel = channel
        self._framer.reset()
        self._ever_connected = True
        self._attempts = 0
        self._gave_up = False
        self._cancel_retry()
        self._reader_task = asyncio.create_task(self._read_loop(channel))
        logger.info("Connected to peer")
        self._set_state(ConnectionState.CONNECTED)

    def _connect_done(self, task: asyncio.Task[None]) -> None:
        if self._connect_task is task:
            self._connect_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Connect attempt failed: %s", task.exception())

    # ------------------------------------------------------------------ #
    # Internal: reading and teardown
    # ------------------------------------------------------------------ #

    async def _read_loop(self, channel: Channel) -> None:
        error: Exception | None = None
        try:
            while True:
                chunk = await channel.read()
                if not chunk:
                    break
                for frame in self._framer.feed(chunk):
                    self._dispatch_frame(frame)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc
        await self._teardown(channel, error)

    def _dispatch_frame(self, frame: Any) -> None:
        if self._handler is None:
            return
        try:
            self._handler.handle_frame(frame)
        except Exception:
            logger.exception("Frame handler failed")

    async def _teardown(self, channel: Channel, error: BaseException | None) -> None:
        """Drop *channel* if it is still current, then start the retry policy."""
        if channel is not self._channel:
            return
        self._channel = None
        reader = self._reader_task
        self._reader_task = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()

        reason = f"Connection closed: {error}" if error else "Connection closed"
        logger.warning("%s", reason)
        self._notify_lost(ConnectionClosedError(reason))
        self._set_state(ConnectionState.DISCONNECTED)

        if not self._closed and self._auto_reconnect and self._ever_connected:
            self._schedule_reconnect()

        await channel.close()

    def _notify_lost(self, exc: ConnectionClosedError) -> None:
        if self._handler is None:
            return
        try:
            self._handler.connection_lost(exc)
        except Exception:
            logger.exception("Connection-lost handler failed")

    # ------------------------------------------------------------------ #
    # Internal: backoff
    # ------------------------------------------------------------------ #

    def _schedule_reconnect(self) -> None:
        if self._retry_handle is not None or self._closed:
            return
        if self._attempts >= self._backoff.max_attempts:
            self._gave_up = True
            logger.warning(
                "Giving up after %d reconnect attempts; reconnect manually",
                self._attempts,
            )
            return

        delay = self._backoff.delay(self._attempts)
        self._attempts += 1
        self._last_retry_delay = delay
        logger.info(
            "Reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self._attempts,
            self._backoff.max_attempts,
        )
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(delay, self._start_retry)

    def _start_retry(self) -> None:
        self._retry_handle = None
        if self._closed:
            return
        self._retry_task = asyncio.create_task(self._retry())

    async def _retry(self) -> None:
        if self._closed or self._state is ConnectionState.CONNECTED:
            return
        try:
            await self.ensure_connected()
        except ConnectionClosedError as exc:
            logger.info("Reconnect attempt %d failed: %s", self._attempts, exc)
            if not self._closed and self._state is not ConnectionState.CONNECTED:
                self._schedule_reconnect()

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    # ------------------------------------------------------------------ #
    # Internal: listener fan-out
    # ------------------------------------------------------------------ #

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Connection state listener failed")
