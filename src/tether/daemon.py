"""The Tether daemon: session registry exposed over encrypted RPC."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import os
import time
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from tether.codec import EnvelopeCodec, generate_key
from tether.config.models import TetherConfig
from tether.constants import SESSION_STATE_KEY
from tether.pairing import PairingDescriptor, PairingMetadata
from tether.rpc.server import HandlerRegistry, RpcServer
from tether.session.models import (
    GetOutputParams,
    GetOutputResult,
    PingResult,
    SendMessageParams,
    SessionState,
    SpawnSessionParams,
    StopSessionParams,
    StopSessionResult,
)
from tether.session.process import ClaudeProcess
from tether.session.registry import ProcessSpawner, SessionRegistry
from tether.transport.base import TransportProvider
from tether.transport.records import FileRecordStore
from tether.transport.tcp import TcpTransport

logger = logging.getLogger(__name__)

KEY_FILE = "encryption.key"
RECORDS_FILE = "records.json"


def _now_ms() -> int:
    return int(time.time() * 1000)


def load_or_create_key(data_dir: Path) -> str:
    """Return the daemon's base64 key, generating and saving one if needed.

    The key file is JSON ``{"key": ..., "createdAt": ...}``, readable by the
    owner only. An unreadable or malformed file is replaced.
    """
    data_dir.mkdir(parents=True, exist_ok=True)
    key_path = data_dir / KEY_FILE

    if key_path.is_file():
        try:
            data = json.loads(key_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable key file %s: %s", key_path, exc)
        else:
            key = data.get("key") if isinstance(data, dict) else None
            if isinstance(key, str) and key:
                try:
                    EnvelopeCodec.from_base64(key)
                except ValueError as exc:
                    logger.warning("Ignoring invalid key in %s: %s", key_path, exc)
                else:
                    logger.info("Loaded existing encryption key")
                    return key

    key = generate_key()
    payload = json.dumps({"key": key, "createdAt": _now_ms()}, indent=2)
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(payload)
    key_path.chmod(0o600)
    logger.info("Generated new encryption key")
    return key


class Daemon:
    """Wires codec, session registry, RPC server and transport together.

    Args:
        config: Validated configuration.
        transport: Transport to serve on; a ``TcpTransport`` on
            ``config.listen`` backed by a ``FileRecordStore`` by default.
        spawner: Starts agent processes; ``ClaudeProcess.spawn`` by default.
        encryption_key: Base64 key; loaded from (or saved to) the data
            directory when omitted.
    """

    def __init__(
        self,
        config: TetherConfig,
        *,
        transport: TransportProvider | None = None,
        spawner: ProcessSpawner | None = None,
        encryption_key: str | None = None,
    ) -> None:
        self._config = config
        self._data_dir = config.resolved_data_dir()
        self._root_dir = config.resolved_root_dir()

        key = encryption_key or load_or_create_key(self._data_dir)
        self._codec = EnvelopeCodec.from_base64(key)

        if transport is None:
            transport = TcpTransport(
                config.listen.host,
                config.listen.port,
                records=FileRecordStore(self._data_dir / RECORDS_FILE),
            )
        self._transport = transport

        if spawner is None:
            spawner = functools.partial(
                ClaudeProcess.spawn,
                command=config.agent.command,
                max_turns=config.agent.max_turns,
            )
        self._registry = SessionRegistry(
            spawner,
            root_dir=self._root_dir,
            buffer_cap=config.sessions.output_buffer_cap,
            default_permission_mode=config.agent.permission_mode,
            default_model=config.agent.model,
            on_change=self._sync_session_state,
        )

        self._handlers = HandlerRegistry()
        self._register_handlers()
        self._server = RpcServer(self._codec, self._handlers)

        self._started = False
        self._shutting_down = False
        self._sync_tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def config(self) -> TetherConfig:
        return self._config

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def root_dir(self) -> Path | None:
        return self._root_dir

    @property
    def codec(self) -> EnvelopeCodec:
        return self._codec

    @property
    def transport(self) -> TransportProvider:
        return self._transport

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def handlers(self) -> HandlerRegistry:
        return self._handlers

    @property
    def server(self) -> RpcServer:
        return self._server

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Begin accepting connections."""
        if self._started:
            return
        await self._transport.serve(self._server.handle_channel)
        self._started = True
        logger.info("Daemon started, peer id %s", self._transport.peer_id)

    async def stop(self) -> None:
        """Terminate every session and close the transport. Idempotent."""
        if self._shutting_down:
            return
        # Set first so no record-store sync touches the transport mid-teardown.
        self._shutting_down = True

        count = len(self._registry)
        self._registry.stop_all()
        if count:
            logger.info("Stopped %d session(s)", count)

        for task in list(self._sync_tasks):
            task.cancel()
        if self._sync_tasks:
            await asyncio.gather(*self._sync_tasks, return_exceptions=True)

        await self._transport.close()
        self._started = False

    # ------------------------------------------------------------------ #
    # Pairing
    # ------------------------------------------------------------------ #

    def pairing_descriptor(self) -> PairingDescriptor:
        return PairingDescriptor(
            dht_public_key=self._transport.peer_id,
            data_key=self._codec.key_base64,
            metadata=PairingMetadata(
                root_dir=str(self._root_dir) if self._root_dir else None,
            ),
        )

    def pairing_url(self) -> str:
        return self.pairing_descriptor().to_url()

    # ------------------------------------------------------------------ #
    # RPC handlers
    # ------------------------------------------------------------------ #

    def _register_handlers(self) -> None:
        self._handlers.register("spawn-session", self._spawn_session)
        self._handlers.register("send-message", self._send_message)
        self._handlers.register("get-output", self._get_output)
        self._handlers.register("stop-session", self._stop_session)
        self._handlers.register("list-sessions", self._list_sessions)
        self._handlers.register("ping", self._ping)
        self._handlers.register("get-session-state", self._get_session_state)

    async def _spawn_session(self, params: Any) -> dict[str, Any]:
        request = SpawnSessionParams.model_validate(params)
        logger.info("[RPC] spawn-session in %s", request.directory)
        result = await self._registry.spawn(
            request.directory,
            session_id=request.session_id,
            permission_mode=request.permission_mode,
            model=request.model,
        )
        return result.to_wire()

    async def _send_message(self, params: Any) -> dict[str, Any]:
        request = SendMessageParams.model_validate(params)
        result = await self._registry.send(request.session_id, request.text)
        return result.to_wire()

    async def _get_output(self, params: Any) -> dict[str, Any]:
        request = GetOutputParams.model_validate(params)
        messages = self._registry.poll(request.session_id, clear=request.clear)
        return GetOutputResult(messages=messages).to_wire()

    async def _stop_session(self, params: Any) -> dict[str, Any]:
        request = StopSessionParams.model_validate(params)
        stopped = self._registry.stop(request.session_id)
        return StopSessionResult(success=stopped).to_wire()

    async def _list_sessions(self, params: Any) -> list[dict[str, Any]]:
        return [summary.to_wire() for summary in self._registry.list_sessions()]

    async def _ping(self, params: Any) -> dict[str, Any]:
        return PingResult(timestamp=_now_ms()).to_wire()

    async def _get_session_state(self, params: Any) -> dict[str, Any] | None:
        raw = await self._transport.get(SESSION_STATE_KEY)
        if raw is None:
            return None
        try:
            state = SessionState.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Ignoring malformed session state record: %s", exc)
            return None
        return state.to_wire()

    # ------------------------------------------------------------------ #
    # Session-state mirroring
    # ------------------------------------------------------------------ #

    def _sync_session_state(self) -> None:
        if self._shutting_down:
            return
        state = SessionState(sessions=self._registry.records(), updated_at=_now_ms())
        payload = state.model_dump_json(by_alias=True).encode("utf-8")
        task = asyncio.create_task(self._store_session_state(payload))
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)

    async def _store_session_state(self, payload: bytes) -> None:
        try:
            await self._transport.put(SESSION_STATE_KEY, payload)
        except Exception:
            if not self._shutting_down:
                logger.exception("Failed to sync session state")
