"""Tests for the TCP transport, record stores, and a loopback daemon round trip."""

from __future__ import annotations

import asyncio
import base64
import json
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from fakes import FakeSpawner, wait_until
from tether.codec import EnvelopeCodec, generate_key
from tether.config.models import ClientConfig, TetherConfig
from tether.daemon import Daemon
from tether.errors import ConnectFailedError, RpcError, TransportError
from tether.pairing import parse_pairing_url
from tether.rpc.client import RpcClient
from tether.rpc.connection import ConnectionState
from tether.transport.base import Channel
from tether.transport.records import FileRecordStore, MemoryRecordStore
from tether.transport.tcp import TcpTransport, decode_peer_id, encode_peer_id

# ================================================================== #
# Peer ids
# ================================================================== #


class TestPeerId:
    def test_round_trip(self) -> None:
        assert decode_peer_id(encode_peer_id("127.0.0.1", 7421)) == ("127.0.0.1", 7421)

    def test_ipv6(self) -> None:
        assert decode_peer_id(encode_peer_id("::1", 80)) == ("::1", 80)

    @pytest.mark.parametrize("text", ["no-port", "host:", "host:abc", "host:70000", ":80"])
    def test_invalid(self, text: str) -> None:
        with pytest.raises(TransportError):
            decode_peer_id(base64.b64encode(text.encode()).decode())

    def test_not_base64(self) -> None:
        with pytest.raises(TransportError, match="Invalid peer id"):
            decode_peer_id("%%%")


# ================================================================== #
# Record stores
# ================================================================== #


class TestRecordStores:
    def test_memory(self) -> None:
        store = MemoryRecordStore()
        assert store.get("k") is None
        store.put("k", b"v")
        assert store.get("k") == b"v"

    def test_file_persists(self, tmp_path: Path) -> None:
        path = tmp_path / "records" / "records.json"
        FileRecordStore(path).put("sessions", b'{"a":1}')

        assert FileRecordStore(path).get("sessions") == b'{"a":1}'
        assert list(json.loads(path.read_text())) == ["sessions"]

    def test_file_keeps_other_keys(self, tmp_path: Path) -> None:
        store = FileRecordStore(tmp_path / "records.json")
        store.put("a", b"1")
        store.put("b", b"2")
        assert (store.get("a"), store.get("b")) == (b"1", b"2")

    def test_file_unreadable_treated_as_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "records.json"
        path.write_text("{corrupt")
        store = FileRecordStore(path)
        assert store.get("a") is None
        store.put("a", b"1")
        assert store.get("a") == b"1"


# ================================================================== #
# TCP channels
# ================================================================== #


@pytest.fixture
async def echo_transport() -> AsyncIterator[TcpTransport]:
    async def _echo(channel: Channel) -> None:
        while True:
            chunk = await channel.read()
            if not chunk:
                return
            await channel.write(chunk)

    transport = TcpTransport("127.0.0.1", 0)
    await transport.serve(_echo)
    yield transport
    await transport.close()


class TestTcpTransport:
    async def test_port_zero_resolves(self, echo_transport: TcpTransport) -> None:
        assert echo_transport.port > 0
        assert decode_peer_id(echo_transport.peer_id) == ("127.0.0.1", echo_transport.port)

    async def test_echo(self, echo_transport: TcpTransport) -> None:
        client = TcpTransport()
        channel = await client.connect(echo_transport.peer_id)
        await channel.write(b"hello\n")
        assert await asyncio.wait_for(channel.read(), timeout=2.0) == b"hello\n"
        await channel.close()
        await channel.close()

    async def test_write_after_close(self, echo_transport: TcpTransport) -> None:
        channel = await TcpTransport().connect(echo_transport.peer_id)
        await channel.close()
        with pytest.raises(TransportError, match="closed"):
            await channel.write(b"x")

    async def test_connect_refused(self) -> None:
        server = TcpTransport("127.0.0.1", 0)

        async def _noop(channel: Channel) -> None:
            return None

        await server.serve(_noop)
        peer_id = server.peer_id
        await server.close()

        with pytest.raises(TransportError, match="Cannot reach"):
            await TcpTransport().connect(peer_id)

    async def test_serve_twice(self, echo_transport: TcpTransport) -> None:
        async def _noop(channel: Channel) -> None:
            return None

        with pytest.raises(RuntimeError):
            await echo_transport.serve(_noop)

    async def test_close_drops_clients(self, echo_transport: TcpTransport) -> None:
        channel = await TcpTransport().connect(echo_transport.peer_id)
        await channel.write(b"ping\n")
        await asyncio.wait_for(channel.read(), timeout=2.0)

        await echo_transport.close()

        assert await asyncio.wait_for(channel.read(), timeout=2.0) == b""
        await channel.close()


# ================================================================== #
# Daemon over real sockets
# ================================================================== #


@pytest.fixture
async def loopback_daemon(tmp_path: Path) -> AsyncIterator[tuple[Daemon, FakeSpawner]]:
    spawner = FakeSpawner()
    config = TetherConfig(data_dir=str(tmp_path / "data"), listen={"host": "127.0.0.1", "port": 0})
    daemon = Daemon(config, spawner=spawner)
    await daemon.start()
    yield daemon, spawner
    await daemon.stop()


class TestLoopbackDaemon:
    async def test_pairing_url_round_trip(
        self, loopback_daemon: tuple[Daemon, FakeSpawner], tmp_path: Path
    ) -> None:
        daemon, spawner = loopback_daemon
        descriptor = parse_pairing_url(daemon.pairing_url())

        async with RpcClient.from_pairing(descriptor) as client:
            assert (await client.call("ping"))["pong"] is True

            spawned = await client.call(
                "spawn-session", {"directory": str(tmp_path), "sessionId": "s1"}
            )
            assert spawned["type"] == "success"

            spawner.last.emit({"type": "assistant", "message": {"content": "done"}})
            output = await client.call("get-output", {"sessionId": "s1", "clear": True})
            assert output["messages"][0]["data"]["message"]["content"] == "done"

    async def test_records_file_written(
        self, loopback_daemon: tuple[Daemon, FakeSpawner], tmp_path: Path
    ) -> None:
        daemon, _ = loopback_daemon
        await daemon.registry.spawn(str(tmp_path), session_id="s1")
        records = daemon.data_dir / "records.json"
        await wait_until(records.is_file)
        assert "sessions" in json.loads(records.read_text())

    async def test_wrong_key_is_rejected_per_call(
        self, loopback_daemon: tuple[Daemon, FakeSpawner]
    ) -> None:
        daemon, _ = loopback_daemon
        client = RpcClient(
            daemon.transport.peer_id,
            EnvelopeCodec.from_base64(generate_key()),
            TcpTransport(),
            call_timeout=2.0,
        )
        with pytest.raises(RpcError, match="authentication"):
            await client.call("ping")
        assert client.connection_state is ConnectionState.CONNECTED
        await client.close()

    async def test_client_reconnects_after_daemon_restart(self, tmp_path: Path) -> None:
        spawner = FakeSpawner()
        key = generate_key()
        first = Daemon(
            TetherConfig(data_dir=str(tmp_path), listen={"host": "127.0.0.1", "port": 0}),
            spawner=spawner,
            encryption_key=key,
        )
        await first.start()
        port = first.transport.port  # type: ignore[attr-defined]
        config = ClientConfig(reconnect_base_delay=0.05, reconnect_max_delay=0.1)
        client = RpcClient.from_pairing(parse_pairing_url(first.pairing_url()), config)
        await client.call("ping")

        await first.stop()
        await wait_until(lambda: client.connection_state is ConnectionState.DISCONNECTED)

        second = Daemon(
            TetherConfig(data_dir=str(tmp_path), listen={"host": "127.0.0.1", "port": port}),
            spawner=spawner,
            encryption_key=key,
        )
        await second.start()
        await wait_until(
            lambda: client.connection_state is ConnectionState.CONNECTED, timeout=5.0
        )
        assert (await client.call("ping"))["pong"] is True

        await client.close()
        await second.stop()

    async def test_unreachable_daemon(self) -> None:
        server = TcpTransport("127.0.0.1", 0)

        async def _noop(channel: Channel) -> None:
            return None

        await server.serve(_noop)
        peer_id = server.peer_id
        await server.close()

        client = RpcClient(peer_id, EnvelopeCodec.from_base64(generate_key()), TcpTransport())
        with pytest.raises(ConnectFailedError):
            await client.call("ping")
        await client.close()
