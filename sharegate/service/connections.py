from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from sharegate.logging import bind_connection, get_logger
from sharegate.service import emitter
from sharegate.service.errors import CodedError, NotFoundError, ServerError
from sharegate.service.emitter import ConnectionHandle
from sharegate.service.middleware import (
    AUTHENTICATE_COMMAND,
    require_authenticated_connection,
)
from sharegate.service.normalizer import normalize_ws_frame
from sharegate.service.notifier import ClientInfo, ErrorNotifier
from sharegate.service.router import CommandRouter
from sharegate.storage.common import ConnectionStore

logger = get_logger(__name__)

POLICY_VIOLATION_CLOSE_CODE = 1008


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED_UNAUTHENTICATED = "connected_unauthenticated"
    CONNECTED_AUTHENTICATED = "connected_authenticated"
    DISCONNECTED = "disconnected"


@dataclass
class _LiveConnection:
    handle: ConnectionHandle
    state: ConnectionState = ConnectionState.CONNECTING
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    client: ClientInfo = field(default_factory=ClientInfo)


class ConnectionRegistry:
    """In-process map of live connection handles, owned by the runtime."""

    def __init__(self) -> None:
        self._live: Dict[str, _LiveConnection] = {}

    def register(self, handle: ConnectionHandle, client: Optional[ClientInfo] = None) -> str:
        connection_id = str(uuid.uuid4())
        self._live[connection_id] = _LiveConnection(handle=handle, client=client or ClientInfo())
        return connection_id

    def get(self, connection_id: str) -> Optional[_LiveConnection]:
        return self._live.get(connection_id)

    def unregister(self, connection_id: str) -> Optional[_LiveConnection]:
        live = self._live.pop(connection_id, None)
        if live is not None:
            live.state = ConnectionState.DISCONNECTED
        return live

    def state(self, connection_id: str) -> ConnectionState:
        live = self._live.get(connection_id)
        return live.state if live is not None else ConnectionState.DISCONNECTED

    def connection_ids(self) -> List[str]:
        return list(self._live)

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._live


class ConnectionLifecycleManager:
    """Drives each WebSocket connection from connect to disconnect.

    Frames on one connection are processed one at a time so that a command
    sent right after ``authenticate`` sees the updated record.
    """

    def __init__(
        self,
        store: ConnectionStore,
        router: CommandRouter,
        registry: ConnectionRegistry,
        notifier: Optional[ErrorNotifier] = None,
        *,
        ws_path: str = "/ws",
    ) -> None:
        self.store = store
        self.router = router
        self.registry = registry
        self.notifier = notifier
        self.ws_path = ws_path

    async def connect(
        self, handle: ConnectionHandle, client: Optional[ClientInfo] = None
    ) -> str:
        connection_id = self.registry.register(handle, client)
        try:
            await self.store.save(connection_id)
        except Exception as exc:
            # Bookkeeping only; the client can still try to authenticate
            logger.error("ws_connect_store_failed", connection_id=connection_id, error=str(exc))
        live = self.registry.get(connection_id)
        if live is not None:
            live.state = ConnectionState.CONNECTED_UNAUTHENTICATED
        logger.info("ws_connected", connection_id=connection_id)
        return connection_id

    async def handle_frame(self, connection_id: str, raw: Union[str, bytes]) -> None:
        live = self.registry.get(connection_id)
        if live is None:
            logger.warning("ws_frame_for_unknown_connection", connection_id=connection_id)
            return
        async with live.lock:
            await self._process_frame(connection_id, live, raw)

    async def _process_frame(
        self, connection_id: str, live: _LiveConnection, raw: Union[str, bytes]
    ) -> None:
        bind_connection(connection_id)
        command = ""
        event = None
        try:
            record = await self.store.get(connection_id)
            event = normalize_ws_frame(raw, record, connection_id)
            command = event.target.command
            if record is None:
                raise NotFoundError("Connection not found")
            # Unknown commands are reported before the gate and never close the socket
            handler = self.router.resolve(event)
            require_authenticated_connection(record, command)
            response = await handler(event)
        except CodedError as exc:
            logger.info(
                "ws_command_rejected",
                connection_id=connection_id,
                command=command,
                status_code=exc.status_code,
                error=exc.message,
            )
            frame = emitter.ws_error(command, exc.status_code, exc.message, exc.error_code)
            await emitter.deliver(live.handle, frame, connection_id=connection_id)
            if exc.should_close:
                await emitter.close(
                    live.handle,
                    connection_id=connection_id,
                    code=POLICY_VIOLATION_CLOSE_CODE,
                    reason=exc.message,
                )
                await self.disconnect(connection_id)
            return
        except Exception as exc:
            logger.exception("ws_command_failed", connection_id=connection_id, command=command)
            if self.notifier is not None:
                self.notifier.notify(
                    exc,
                    endpoint=f"{self.ws_path} {command}",
                    method="WS",
                    payload=event.parsed_body if event is not None else None,
                    client=live.client,
                )
            internal = ServerError("Internal server error")
            frame = emitter.ws_error(
                command, internal.status_code, internal.message, internal.error_code
            )
            await emitter.deliver(live.handle, frame, connection_id=connection_id)
            return

        if command == AUTHENTICATE_COMMAND:
            live.state = ConnectionState.CONNECTED_AUTHENTICATED
        await emitter.deliver(
            live.handle, emitter.ws_success(command, response), connection_id=connection_id
        )

    async def send_to(self, connection_id: str, frame: Dict[str, Any]) -> bool:
        """Push a server-initiated frame to one connection held by this process."""
        live = self.registry.get(connection_id)
        if live is None:
            logger.info("ws_push_skipped", connection_id=connection_id, reason="not_local")
            return False
        return await emitter.deliver(live.handle, frame, connection_id=connection_id)

    async def send_to_many(self, connection_ids: Iterable[str], frame: Dict[str, Any]) -> int:
        delivered = 0
        for connection_id in dict.fromkeys(connection_ids):
            if await self.send_to(connection_id, frame):
                delivered += 1
        return delivered

    async def broadcast_to_channel(self, channel: str, frame: Dict[str, Any]) -> int:
        """Deliver ``frame`` to every authenticated connection allowed on ``channel``.

        Returns the number of successful deliveries. Connections held by other
        processes are skipped.
        """
        records = await self.store.list_by_channel(channel)
        delivered = await self.send_to_many((r.connection_id for r in records), frame)
        logger.info(
            "ws_broadcast",
            channel=channel,
            matched=len(records),
            delivered=delivered,
        )
        return delivered

    async def broadcast_to_resource(
        self, resource_type: str, resource_id: str, frame: Dict[str, Any]
    ) -> int:
        records = await self.store.list_by_resource(resource_type, resource_id)
        delivered = await self.send_to_many((r.connection_id for r in records), frame)
        logger.info(
            "ws_broadcast",
            resource_type=resource_type,
            resource_id=resource_id,
            matched=len(records),
            delivered=delivered,
        )
        return delivered

    async def disconnect(self, connection_id: str) -> None:
        live = self.registry.unregister(connection_id)
        try:
            await self.store.delete(connection_id)
        except Exception as exc:
            logger.error("ws_disconnect_store_failed", connection_id=connection_id, error=str(exc))
        if live is not None:
            logger.info("ws_disconnected", connection_id=connection_id)

    async def close_all(self) -> None:
        for connection_id in self.registry.connection_ids():
            live = self.registry.get(connection_id)
            if live is not None:
                await emitter.close(live.handle, connection_id=connection_id, code=1001)
            await self.disconnect(connection_id)
