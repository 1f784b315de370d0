"""Client-side request/response correlation.

Each ``call`` gets a fresh id, an encrypted params envelope and a timer.
Responses are matched purely by id, so the peer may answer in any order.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from tether.codec import CodecError, EnvelopeCodec
from tether.errors import (
    CallTimeoutError,
    ConnectionClosedError,
    ProtocolError,
    ResponseDecodeError,
    RpcError,
)
from tether.rpc.connection import ConnectionManager
from tether.rpc.models import RpcRequest, parse_response

logger = logging.getLogger(__name__)

#: Default per-call deadline in seconds.
DEFAULT_CALL_TIMEOUT = 30.0


@dataclass
class PendingRequest:
    """An outstanding call waiting for its response or its deadline."""

    request_id: str
    method: str
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle
    timeout: float


class RpcCorrelator:
    """Matches responses to calls over a ``ConnectionManager``.

    Registers itself as the manager's frame handler, so every inbound frame
    and every connection loss is routed here.
    """

    def __init__(
        self,
        codec: EnvelopeCodec,
        connection: ConnectionManager,
        *,
        default_timeout: float = DEFAULT_CALL_TIMEOUT,
    ) -> None:
        self._codec = codec
        self._connection = connection
        self._default_timeout = default_timeout
        self._pending: dict[str, PendingRequest] = {}
        connection.set_frame_handler(self)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    async def call(
        self,
        method: str,
        params: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """Invoke *method* on the peer and return its decrypted result.

        Raises:
            RpcError: The peer reported a failure.
            CallTimeoutError: No response before the deadline.
            ConnectionClosedError: Could not connect, or the connection was
                lost while the call was outstanding.
        """
        deadline = self._default_timeout if timeout is None else timeout
        await self._connection.ensure_connected()

        request_id = self._new_id()
        envelope = self._codec.encrypt({} if params is None else params)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        timer = loop.call_later(deadline, self._expire, request_id)
        self._pending[request_id] = PendingRequest(
            request_id=request_id,
            method=method,
            future=future,
            timer=timer,
            timeout=deadline,
        )

        request = RpcRequest(id=request_id, method=method, params=envelope)
        try:
            await self._connection.write(request.model_dump())
        except ConnectionClosedError:
            # A failed write tears the connection down, which normally fails
            # this entry already; drop it in case it is still registered.
            self._discard(request_id)
            raise

        try:
            return await future
        finally:
            self._discard(request_id)

    # ------------------------------------------------------------------ #
    # FrameHandler
    # ------------------------------------------------------------------ #

    def handle_frame(self, frame: Any) -> None:
        try:
            response = parse_response(frame)
        except ProtocolError as exc:
            logger.warning("Dropping frame: %s", exc)
            return

        entry = self._pending.pop(response.id, None)
        if entry is None:
            logger.debug("Dropping response for unknown request %s", response.id)
            return
        entry.timer.cancel()
        if entry.future.done():
            return

        if not response.ok:
            entry.future.set_exception(RpcError(response.error or ""))
            return
        if response.result is None:
            entry.future.set_result({})
            return
        try:
            value = self._codec.decrypt(response.result)
        except CodecError as exc:
            error = ResponseDecodeError(f"Cannot decode result of {entry.method}: {exc}")
            error.__cause__ = exc
            entry.future.set_exception(error)
            return
        entry.future.set_result(value)

    def connection_lost(self, exc: ConnectionClosedError) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(type(exc)(str(exc)))
        if pending:
            logger.info("Failed %d pending call(s): %s", len(pending), exc)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _new_id(self) -> str:
        request_id = uuid.uuid4().hex
        while request_id in self._pending:
            request_id = uuid.uuid4().hex
        return request_id

    def _expire(self, request_id: str) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.future.done():
            return
        entry.future.set_exception(
            CallTimeoutError(
                f"Request timed out after {entry.timeout:g}s: {entry.method}"
            )
        )

    def _discard(self, request_id: str) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is not None:
            entry.timer.cancel()
