"""High-level RPC client: one connection manager plus one correlator."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from tether.codec import EnvelopeCodec
from tether.config.models import ClientConfig
from tether.pairing import PairingDescriptor
from tether.rpc.connection import (
    BackoffPolicy,
    ConnectionManager,
    ConnectionState,
    StateListener,
)
from tether.rpc.correlator import DEFAULT_CALL_TIMEOUT, RpcCorrelator
from tether.transport.base import TransportProvider
from tether.transport.tcp import TcpTransport


class RpcClient:
    """Encrypted RPC client bound to a single peer.

    Usage::

        async with RpcClient(peer_id, codec, TcpTransport()) as client:
            result = await client.call("ping")
    """

    def __init__(
        self,
        peer_id: str,
        codec: EnvelopeCodec,
        transport: TransportProvider,
        *,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        connect_timeout: float = 10.0,
        backoff: BackoffPolicy | None = None,
    ) -> None:
        self._transport = transport
        self._connection = ConnectionManager(
            transport,
            peer_id,
            connect_timeout=connect_timeout,
            backoff=backoff,
        )
        self._correlator = RpcCorrelator(
            codec, self._connection, default_timeout=call_timeout
        )

    @classmethod
    def from_pairing(
        cls,
        descriptor: PairingDescriptor,
        config: ClientConfig | None = None,
        transport: TransportProvider | None = None,
    ) -> RpcClient:
        """Build a client for the daemon named by a pairing descriptor."""
        config = config or ClientConfig()
        return cls(
            descriptor.peer_id,
            EnvelopeCodec.from_base64(descriptor.data_key),
            transport or TcpTransport(),
            call_timeout=config.call_timeout,
            connect_timeout=config.connect_timeout,
            backoff=BackoffPolicy(
                base_delay=config.reconnect_base_delay,
                max_delay=config.reconnect_max_delay,
                max_attempts=config.max_reconnect_attempts,
            ),
        )

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection.state

    def on_connection_change(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to state transitions. Returns an unsubscribe function."""
        return self._connection.add_listener(listener)

    async def call(
        self,
        method: str,
        params: Any = None,
        timeout: float | None = None,
    ) -> Any:
        return await self._correlator.call(method, params, timeout=timeout)

    async def ensure_connected(self) -> None:
        await self._connection.ensure_connected()

    async def reconnect(self) -> None:
        await self._connection.reconnect()

    async def close(self) -> None:
        await self._connection.close()
        await self._transport.close()

    async def __aenter__(self) -> RpcClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
