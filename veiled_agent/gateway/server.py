from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Union

from websockets.asyncio.server import Server, ServerConnection, broadcast, serve
from websockets.exceptions import ConnectionClosed

from veiled_agent.common.logging import log_event
from veiled_agent.gateway.protocol import ClientMessage, ServerMessage, UnknownMessage, decode_client_message

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SessionMessage:
    connection_id: str
    message: ClientMessage


@dataclass(frozen=True, slots=True)
class SessionClosed:
    connection_id: str


SessionEvent = Union[SessionMessage, SessionClosed]


class RealtimeGateway:
    """
    Websocket session server.

    Inbound messages are decoded at the boundary and queued for the engine;
    the gateway never touches order state itself.
    """

    def __init__(self, *, host: str, port: int, inbox: "asyncio.Queue[object]") -> None:
        self._host = host
        self._port = int(port)
        self._inbox = inbox
        self._connections: dict[str, ServerConnection] = {}
        self._server: Optional[Server] = None

    @property
    def port(self) -> int:
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._connections

    async def start(self) -> None:
        self._server = await serve(self._handle, self._host, self._port)
        log_event(logger, "gateway.listening", host=self._host, port=self.port)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        log_event(logger, "gateway.stopped")

    async def _handle(self, connection: ServerConnection) -> None:
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = connection
        log_event(
            logger,
            "gateway.connection_opened",
            connection_id=connection_id,
            remote=str(connection.remote_address),
            connections=len(self._connections),
        )
        try:
            async for raw in connection:
                try:
                    message = decode_client_message(raw)
                except Exception:
                    # A frame that cannot be decoded is dropped; the session stays open.
                    logger.exception("gateway.decode_failed", extra={"event_type": "gateway.decode_failed"})
                    continue
                if isinstance(message, UnknownMessage):
                    logger.debug("ignoring inbound message from %s: %s", connection_id, message.reason)
                await self._inbox.put(SessionMessage(connection_id=connection_id, message=message))
        except ConnectionClosed:
            pass
        finally:
            self._connections.pop(connection_id, None)
            await self._inbox.put(SessionClosed(connection_id=connection_id))
            log_event(
                logger,
                "gateway.connection_closed",
                connection_id=connection_id,
                connections=len(self._connections),
            )

    def broadcast(self, message: ServerMessage) -> None:
        if self._connections:
            broadcast(list(self._connections.values()), message.to_json())

    async def send(self, connection_id: str, message: ServerMessage) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        try:
            await connection.send(message.to_json())
        except ConnectionClosed:
            return False
        return True
