"""Transport providers: duplex byte streams plus discovery records."""

from tether.transport.base import Channel, ChannelHandler, TransportProvider
from tether.transport.records import FileRecordStore, MemoryRecordStore, RecordStore
from tether.transport.tcp import (
    TcpChannel,
    TcpTransport,
    decode_peer_id,
    encode_peer_id,
)

__all__ = [
    "Channel",
    "ChannelHandler",
    "FileRecordStore",
    "MemoryRecordStore",
    "RecordStore",
    "TcpChannel",
    "TcpTransport",
    "TransportProvider",
    "decode_peer_id",
    "encode_peer_id",
]
