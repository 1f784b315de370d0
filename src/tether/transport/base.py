"""Transport provider and channel protocols.

A transport provider turns a peer identifier into a duplex byte stream
(``Channel``) and offers a small key/value store for discovery records.
The RPC layers only ever talk to these protocols.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable


@runtime_checkable
class Channel(Protocol):
    """A connected, ordered, duplex byte stream."""

    async def read(self) -> bytes:
        """Return the next chunk of bytes, or ``b""`` at end of stream."""
        ...

    async def write(self, data: bytes) -> None:
        """Write *data* in full. Concurrent writes never interleave."""
        ...

    async def close(self) -> None:
        """Close the stream. Safe to call more than once."""
        ...


#: Callback invoked by ``TransportProvider.serve`` for each inbound channel.
ChannelHandler = Callable[[Channel], Awaitable[None]]


@runtime_checkable
class TransportProvider(Protocol):
    """Peer-to-peer connection substrate."""

    @property
    def peer_id(self) -> str:
        """Identifier other peers pass to ``connect`` to reach this endpoint."""
        ...

    async def connect(self, peer_id: str) -> Channel:
        """Open a channel to *peer_id*."""
        ...

    async def serve(self, handler: ChannelHandler) -> None:
        """Start accepting inbound channels, handing each to *handler*."""
        ...

    async def close(self) -> None:
        """Stop serving and release resources."""
        ...

    async def put(self, key: str, value: bytes) -> None:
        """Publish a discovery record under *key*."""
        ...

    async def get(self, key: str) -> bytes | None:
        """Fetch the latest discovery record for *key*, or ``None``."""
        ...
