import asyncio
import json
import uuid
from contextlib import suppress
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger
from starlette.websockets import WebSocketState

from webhook_inbox.common.metrics import metrics
from webhook_inbox.common.models import WebhookMessage


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Connection:
    def __init__(self, websocket: WebSocket):
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.state = ConnectionState.CONNECTING

    @property
    def is_open(self) -> bool:
        return (
            self.state == ConnectionState.OPEN
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    @property
    def remote(self) -> str:
        client = getattr(self.websocket, "client", None)
        return f"{client.host}:{client.port}" if client else "unknown"


class BroadcastHub:
    """Tracks live WebSocket connections and pushes stored webhook messages to them.

    The registry is only ever iterated through a snapshot, so connections may
    come and go while a broadcast or heartbeat sweep is suspended on a send.
    """

    def __init__(self, heartbeat_interval: float = 30.0):
        self.heartbeat_interval = heartbeat_interval
        self._connections: Dict[str, Connection] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get(self, client_id: str) -> Optional[Connection]:
        return self._connections.get(client_id)

    async def connect(self, websocket: WebSocket) -> Connection:
        connection = Connection(websocket)
        await websocket.accept()
        connection.state = ConnectionState.OPEN
        self._connections[connection.id] = connection
        metrics.websocket_connections.set(self.connection_count)

        logger.info(f"WebSocket client connected: {connection.id} ({connection.remote})")

        await self._send(
            connection,
            {
                "type": "connection",
                "message": "Connected to webhook server",
                "clientId": connection.id,
                "timestamp": _now(),
            },
        )
        return connection

    def disconnect(self, client_id: str) -> None:
        connection = self._connections.pop(client_id, None)
        if connection is None:
            return
        connection.state = ConnectionState.CLOSED
        metrics.websocket_connections.set(self.connection_count)
        logger.info(f"WebSocket client removed: {client_id}")

    async def terminate(self, connection: Connection, code: int = 1001) -> None:
        self.disconnect(connection.id)
        try:
            await connection.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"Error closing WebSocket {connection.id}: {e}")

    async def handle_frame(self, connection: Connection, raw: Union[str, bytes, None]) -> None:
        """React to one client frame."""
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            # Non-UTF-8 binary frames land here too
            logger.warning(f"Invalid JSON from WebSocket client {connection.id}")
            await self._send(connection, {"type": "error", "message": "Invalid JSON message", "timestamp": _now()})
            return

        frame_type = frame.get("type") if isinstance(frame, dict) else None
        logger.debug(f"Message from client {connection.id}: {frame_type}")

        if frame_type == "ping":
            await self._send(connection, {"type": "pong", "timestamp": _now()})
        elif frame_type == "subscribe":
            # Filtering happens client-side; the filters are only acknowledged
            await self._send(
                connection,
                {"type": "subscribed", "filters": frame.get("filters") or {}, "timestamp": _now()},
            )
        elif frame_type == "pong":
            return
        else:
            await self._send(connection, {"type": "error", "message": "Unknown message type", "timestamp": _now()})

    async def broadcast(self, message: WebhookMessage) -> int:
        """Send a ``webhook_message`` frame to every open connection and return how many got it."""
        payload = json.dumps(
            {
                "type": "webhook_message",
                "data": message.to_wire(),
                "timestamp": _now(),
            }
        )

        sent = 0
        for connection in list(self._connections.values()):
            if not connection.is_open:
                continue
            if await self._send_text(connection, payload):
                sent += 1

        metrics.broadcast_sent_total.inc(sent)
        logger.info(f"Broadcasted webhook message {message.id} ({message.type}) to {sent} clients")
        return sent

    async def send_to_client(self, client_id: str, frame: Dict[str, Any]) -> bool:
        connection = self._connections.get(client_id)
        if connection is None:
            return False
        return await self._send(connection, frame)

    async def sweep(self) -> int:
        """Terminate connections whose transport is gone but never reached the receive loop.

        Half-open sockets are detected by the server's protocol-level ping/pong
        (uvicorn ``ws_ping_interval``/``ws_ping_timeout``), which browsers answer
        without any client code. Clients that only listen stay registered.
        """
        terminated = 0
        for connection in list(self._connections.values()):
            if connection.is_open:
                continue
            logger.info(f"Terminating inactive client: {connection.id}")
            await self.terminate(connection)
            terminated += 1
        return terminated

    async def _send(self, connection: Connection, frame: Dict[str, Any]) -> bool:
        return await self._send_text(connection, json.dumps(frame))

    async def _send_text(self, connection: Connection, payload: str) -> bool:
        if not connection.is_open:
            return False
        try:
            await connection.websocket.send_text(payload)
            return True
        except Exception as e:
            # Only this connection is dropped; the caller carries on with the others
            metrics.broadcast_errors.inc()
            logger.error(f"Error sending message to client {connection.id}: {e}")
            self.disconnect(connection.id)
            return False

    def start(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat())
            logger.info(f"WebSocket heartbeat started (every {self.heartbeat_interval}s)")

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._heartbeat_task
            self._heartbeat_task = None

        for connection in list(self._connections.values()):
            await self.terminate(connection)

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"WebSocket heartbeat sweep failed: {e}")


async def websocket_endpoint(websocket: WebSocket):
    hub: BroadcastHub = websocket.app.state.hub
    connection = await hub.connect(websocket)
    try:
        while connection.is_open:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            await hub.handle_frame(connection, raw)
    except WebSocketDisconnect as e:
        logger.info(f"WebSocket client disconnected: {connection.id} (code: {e.code})")
    except Exception as e:
        logger.error(f"WebSocket connection {connection.id} failed: {e}")
        await hub.terminate(connection, code=1011)
    finally:
        hub.disconnect(connection.id)
