"""Plain TCP transport provider built on asyncio streams.

Peer identifiers are the base64 encoding of ``"host:port"``, so they can be
carried in pairing codes the same way an opaque public key would be.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import logging

from tether.constants import DEFAULT_HOST, DEFAULT_PORT
from tether.errors import TransportError
from tether.transport.base import ChannelHandler
from tether.transport.records import MemoryRecordStore, RecordStore

logger = logging.getLogger(__name__)

#: Max bytes returned by a single ``TcpChannel.read``.
_READ_CHUNK = 65_536


def encode_peer_id(host: str, port: int) -> str:
    """Build the peer identifier for a TCP endpoint."""
    return base64.b64encode(f"{host}:{port}".encode()).decode("ascii")


def decode_peer_id(peer_id: str) -> tuple[str, int]:
    """Split a peer identifier back into ``(host, port)``.

    Raises:
        TransportError: The identifier is not a base64 ``host:port`` pair.
    """
    try:
        text = base64.b64decode(peer_id, validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        msg = f"Invalid peer id {peer_id!r}"
        raise TransportError(msg) from exc

    host, sep, port_text = text.rpartition(":")
    if not sep or not host or not port_text.isdigit():
        msg = f"Invalid peer id {peer_id!r}: expected host:port"
        raise TransportError(msg)
    port = int(port_text)
    if not 0 < port < 65_536:
        msg = f"Invalid peer id {peer_id!r}: port out of range"
        raise TransportError(msg)
    return host.strip("[]"), port


class TcpChannel:
    """``Channel`` over an asyncio ``StreamReader``/``StreamWriter`` pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self._writer.is_closing()

    async def read(self) -> bytes:
        try:
            return await self._reader.read(_READ_CHUNK)
        except (ConnectionError, OSError) as exc:
            raise TransportError(f"Read failed: {exc}") from exc

    async def write(self, data: bytes) -> None:
        if self.closed:
            msg = "Write on closed channel"
            raise TransportError(msg)
        try:
            # write() queues the whole buffer synchronously, so concurrent
            # writers cannot interleave partial frames.
            self._writer.write(data)
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            raise TransportError(f"Write failed: {exc}") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self._writer.wait_closed()


class TcpTransport:
    """``TransportProvider`` that listens on and dials plain TCP sockets."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        records: RecordStore | None = None,
        advertise_host: str | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._advertise_host = advertise_host or host
        self._records: RecordStore = records if records is not None else MemoryRecordStore()
        self._server: asyncio.Server | None = None
        self._channels: set[TcpChannel] = set()

    @property
    def peer_id(self) -> str:
        return encode_peer_id(self._advertise_host, self._port)

    @property
    def port(self) -> int:
        """Listening port (resolved after ``serve`` when bound to port 0)."""
        return self._port

    async def connect(self, peer_id: str) -> TcpChannel:
        host, port = decode_peer_id(peer_id)
        try:
            reader, writer = await asyncio.open_connection(host, port)
        except OSError as exc:
            raise TransportError(f"Cannot reach {host}:{port}: {exc}") from exc
        return TcpChannel(reader, writer)

    async def serve(self, handler: ChannelHandler) -> None:
        if self._server is not None:
            msg = "Transport is already serving"
            raise RuntimeError(msg)

        async def _on_client(
            reader: asyncio.StreamReader,
            writer: asyncio.StreamWriter,
        ) -> None:
            channel = TcpChannel(reader, writer)
            self._channels.add(channel)
            try:
                await handler(channel)
            except Exception:
                logger.exception("Channel handler failed")
            finally:
                self._channels.discard(channel)
                await channel.close()

        try:
            self._server = await asyncio.start_server(_on_client, self._host, self._port)
        except OSError as exc:
            raise TransportError(
                f"Cannot listen on {self._host}:{self._port}: {exc}"
            ) from exc

        sockets = self._server.sockets or []
        if sockets:
            self._port = sockets[0].getsockname()[1]
        logger.info("Listening on %s:%d", self._host, self._port)

    async def close(self) -> None:
        server = self._server
        self._server = None
        if server is not None:
            server.close()
        for channel in list(self._channels):
            await channel.close()
        if server is not None:
            await server.wait_closed()

    async def put(self, key: str, value: bytes) -> None:
        self._records.put(key, value)

    async def get(self, key: str) -> bytes | None:
        return self._records.get(key)
