"""
Real-time fan-out of order events over websockets.

Clients connect to ``/ws`` and exchange ``{"event": ..., "data": ...}``
envelopes. Every connection receives the unscoped kitchen events; a
connection that sent ``joinTable`` also receives the events addressed to
that table's channel. Delivery is best effort: nothing is persisted and a
client that is not connected when an event fires never sees it.
"""
import asyncio
import json
import logging
import threading
from typing import Any, Dict, Optional, Protocol, Set

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

# Wire event names
NEW_ORDER = "newOrder"
ORDER_UPDATED = "orderUpdated"
ORDER_DELETED = "orderDeleted"
ORDER_STATUS_UPDATE = "orderStatusUpdate"

JOIN_TABLE = "joinTable"
LEAVE_TABLE = "leaveTable"
JOINED_TABLE = "joinedTable"


class NotificationFanOut(Protocol):
    def broadcast_all(self, event: str, payload: Any) -> None: ...

    def broadcast_to_channel(self, channel_id: str, event: str, payload: Any) -> None: ...


class Connection:
    """One websocket client: its channel memberships and its outbound queue."""

    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop):
        self.websocket = websocket
        self.loop = loop
        self.channels: Set[str] = set()
        self.queue: asyncio.Queue = asyncio.Queue()

    def push(self, message: Dict[str, Any]) -> None:
        # Producers run in the endpoint threadpool as well as on the loop
        self.loop.call_soon_threadsafe(self.queue.put_nowait, message)


class ConnectionManager:
    def __init__(self):
        self._connections: Set[Connection] = set()
        self._lock = threading.Lock()

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def broadcast_all(self, event: str, payload: Any) -> None:
        self._deliver(None, event, payload)

    def broadcast_to_channel(self, channel_id: str, event: str, payload: Any) -> None:
        self._deliver(str(channel_id), event, payload)

    def _deliver(self, channel_id: Optional[str], event: str, payload: Any) -> None:
        message = {"event": event, "data": jsonable_encoder(payload)}
        with self._lock:
            targets = [c for c in self._connections if channel_id is None or channel_id in c.channels]
        for connection in targets:
            try:
                connection.push(message)
            except RuntimeError:
                # Loop already closed, the connection is on its way out
                logger.warning("Dropped %s for a closed connection", event)

    def _register(self, connection: Connection) -> None:
        with self._lock:
            self._connections.add(connection)

    def _unregister(self, connection: Connection) -> None:
        with self._lock:
            self._connections.discard(connection)

    def join(self, connection: Connection, channel_id: str) -> None:
        with self._lock:
            connection.channels.add(channel_id)
        logger.info("Client joined table channel %s", channel_id)
        connection.push({"event": JOINED_TABLE, "data": channel_id})

    def leave(self, connection: Connection, channel_id: str) -> None:
        with self._lock:
            connection.channels.discard(channel_id)

    async def serve(self, websocket: WebSocket) -> None:
        """Run one client connection until it disconnects."""
        # Registered before accept: a client that saw the handshake gets every later event
        connection = Connection(websocket, asyncio.get_running_loop())
        self._register(connection)
        writer = None
        try:
            await websocket.accept()
            logger.info("Client connected (%d open)", self.connection_count)
            writer = asyncio.create_task(self._drain(connection))
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                if message.get("text") is None:
                    logger.warning("Ignoring malformed client message")
                    continue
                self._handle(connection, message["text"])
        except WebSocketDisconnect:
            pass
        finally:
            self._unregister(connection)
            if writer is not None:
                writer.cancel()
            logger.info("Client disconnected (%d open)", self.connection_count)

    def _handle(self, connection: Connection, raw: str) -> None:
        try:
            message = json.loads(raw)
            event, data = message["event"], message.get("data")
        except (ValueError, TypeError, KeyError):
            logger.warning("Ignoring malformed client message")
            return
        if event in (JOIN_TABLE, LEAVE_TABLE) and isinstance(data, (str, int)) and str(data):
            if event == JOIN_TABLE:
                self.join(connection, str(data))
            else:
                self.leave(connection, str(data))
            return
        logger.warning("Ignoring client event %r", event)

    async def _drain(self, connection: Connection) -> None:
        while True:
            message = await connection.queue.get()
            try:
                await connection.websocket.send_json(message)
            except Exception:
                logger.warning("Failed to deliver %s, dropping connection", message.get("event"), exc_info=True)
                self._unregister(connection)
                return
