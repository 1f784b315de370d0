"""Exception hierarchy shared by the transport, RPC and daemon layers."""

from __future__ import annotations


class TetherError(Exception):
    """Base class for every error raised by Tether."""


class ProtocolError(TetherError):
    """A frame or request object that does not match the wire format."""


class TransportError(TetherError):
    """The underlying byte stream failed or was closed."""


class ConnectionClosedError(TetherError, ConnectionError):
    """The connection carrying a call went away before it was answered."""


class ConnectFailedError(ConnectionClosedError):
    """A connect attempt did not produce a usable connection."""


class ConnectionTimeout(ConnectFailedError):
    """A connect attempt produced neither success nor failure in time."""


class CallTimeoutError(TetherError, TimeoutError):
    """No response arrived for a call before its deadline."""


class RpcError(TetherError):
    """Failure reported by the remote peer for a single call."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ResponseDecodeError(RpcError):
    """The peer answered, but its result envelope could not be opened."""
