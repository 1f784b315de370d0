"""Encrypted request/response RPC over newline-delimited JSON."""

from tether.rpc.client import RpcClient
from tether.rpc.connection import (
    BackoffPolicy,
    ConnectionManager,
    ConnectionState,
    StateListener,
)
from tether.rpc.correlator import DEFAULT_CALL_TIMEOUT, PendingRequest, RpcCorrelator
from tether.rpc.framing import LineFramer, encode_frame
from tether.rpc.models import RpcRequest, RpcResponse, parse_request, parse_response
from tether.rpc.server import Handler, HandlerRegistry, RpcServer

__all__ = [
    "DEFAULT_CALL_TIMEOUT",
    "BackoffPolicy",
    "ConnectionManager",
    "ConnectionState",
    "Handler",
    "HandlerRegistry",
    "LineFramer",
    "PendingRequest",
    "RpcClient",
    "RpcCorrelator",
    "RpcRequest",
    "RpcResponse",
    "RpcServer",
    "StateListener",
    "encode_frame",
    "parse_request",
    "parse_response",
]
