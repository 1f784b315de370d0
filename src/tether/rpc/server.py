"""Server-side dispatch of encrypted RPC requests.

For every well-formed request exactly one response line is written.
Requests on one channel are served concurrently, so responses can leave
in a different order than the requests arrived.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from tether.codec import EnvelopeCodec
from tether.errors import ProtocolError, TransportError
from tether.rpc.framing import LineFramer, encode_frame
from tether.rpc.models import RpcRequest, RpcResponse, parse_request
from tether.transport.base import Channel

logger = logging.getLogger(__name__)

#: An RPC method implementation: decrypted params in, plain result out.
Handler = Callable[[Any], Awaitable[Any]]


class HandlerRegistry:
    """Method name to handler table."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, method: str, handler: Handler) -> None:
        if method in self._handlers:
            msg = f"Handler already registered for {method!r}"
            raise ValueError(msg)
        self._handlers[method] = handler

    def method(self, name: str) -> Callable[[Handler], Handler]:
        """Decorator form of ``register``."""

        def _decorator(handler: Handler) -> Handler:
            self.register(name, handler)
            return handler

        return _decorator

    def get(self, method: str) -> Handler | None:
        return self._handlers.get(method)

    @property
    def methods(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, method: object) -> bool:
        return method in self._handlers


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(p) for p in error["loc"]) or "params"
        parts.append(f"{loc}: {error['msg']}")
    return "; ".join(parts)


class RpcServer:
    """Serves ``HandlerRegistry`` methods over transport channels."""

    def __init__(self, codec: EnvelopeCodec, handlers: HandlerRegistry) -> None:
        self._codec = codec
        self._handlers = handlers
        self._active = 0

    @property
    def active_connections(self) -> int:
        return self._active

    async def handle_channel(self, channel: Channel) -> None:
        """Read requests from *channel* until it closes."""
        framer = LineFramer()
        in_flight: set[str] = set()
        tasks: set[asyncio.Task[None]] = set()
        self._active += 1
        logger.info("Client connected (%d active)", self._active)
        try:
            while True:
                try:
                    chunk = await channel.read()
                except TransportError as exc:
                    logger.info("Channel read failed: %s", exc)
                    break
                if not chunk:
                    break
                for frame in framer.feed(chunk):
                    self._accept(frame, channel, in_flight, tasks)
        finally:
            self._active -= 1
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Client disconnected (%d active)", self._active)

    def _accept(
        self,
        frame: Any,
        channel: Channel,
        in_flight: set[str],
        tasks: set[asyncio.Task[None]],
    ) -> None:
        try:
            request = parse_request(frame)
        except ProtocolError as exc:
            request_id = frame.get("id") if isinstance(frame, dict) else None
            if not isinstance(request_id, str) or not request_id or request_id in in_flight:
                logger.warning("Dropping frame: %s", exc)
                return
            response = RpcResponse.failure(request_id, str(exc))
            self._spawn(self._write(channel, response), tasks)
            return

        if request.id in in_flight:
            logger.warning("Ignoring duplicate in-flight request id %s", request.id)
            return

        in_flight.add(request.id)
        task = self._spawn(self._serve(request, channel), tasks)
        task.add_done_callback(lambda _t: in_flight.discard(request.id))

    def _spawn(
        self,
        coro: Awaitable[None],
        tasks: set[asyncio.Task[None]],
    ) -> asyncio.Task[None]:
        task = asyncio.ensure_future(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        return task

    async def _serve(self, request: RpcRequest, channel: Channel) -> None:
        response = await self.dispatch(request)
        await self._write(channel, response)

    async def dispatch(self, request: RpcRequest) -> RpcResponse:
        """Run one request through its handler and build the response."""
        handler = self._handlers.get(request.method)
        try:
            params = self._codec.decrypt(request.params)
            if handler is None:
                return RpcResponse.failure(
                    request.id, f"Unknown method: {request.method}"
                )
            result = await handler(params)
            return RpcResponse.success(request.id, self._codec.encrypt(result))
        except asyncio.CancelledError:
            raise
        except ValidationError as exc:
            error = f"Invalid params for {request.method}: {_describe_validation_error(exc)}"
            logger.info("%s", error)
            return RpcResponse.failure(request.id, error)
        except Exception as exc:
            logger.warning("Handler for %s failed: %s", request.method, exc)
            return RpcResponse.failure(request.id, str(exc) or type(exc).__name__)

    async def _write(self, channel: Channel, response: RpcResponse) -> None:
        try:
            await channel.write(encode_frame(response.to_wire()))
        except TransportError as exc:
            logger.debug("Dropping response %s: %s", response.id, exc)
