"""WebSocket connection registry and outbound delivery."""

import asyncio
import logging
import uuid

from fastapi import WebSocket

from signaling.protocol import Event, encode_ack, encode_binary, encode_text

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Owns every live WebSocket, keyed by a server-assigned connection id.

    Sends to one connection are serialized by a per-connection lock, so
    frames queued in order are written in order.
    """

    def __init__(self) -> None:
        self._connections: dict[str, WebSocket] = {}
        self._send_locks: dict[str, asyncio.Lock] = {}
        self._pending: set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = websocket
        self._send_locks[connection_id] = asyncio.Lock()
        logger.info(f"WebSocket client connected. Total: {len(self._connections)}")
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)
        self._send_locks.pop(connection_id, None)
        logger.info(f"WebSocket client disconnected. Total: {len(self._connections)}")

    async def send_event(self, connection_id: str, event: str, data=None) -> bool:
        return await self._send(connection_id, encode_text(event, data))

    async def send_binary(
        self, connection_id: str, event: str, data: dict, payload: bytes
    ) -> bool:
        return await self._send(connection_id, encode_binary(event, data, payload))

    async def send_ack(self, connection_id: str, ack_id: int, result: str) -> bool:
        return await self._send(connection_id, encode_ack(ack_id, result))

    async def push_views(self, views: dict) -> None:
        """
        Deliver a recomputed directory snapshot: each connection gets its
        own peer-list. Sends are queued as tasks so a slow client does not
        hold up the directory.
        """
        for connection_id, visible in views.items():
            payload = [peer.public_view() for peer in visible]
            task = asyncio.create_task(
                self.send_event(connection_id, Event.PEER_LIST, payload)
            )
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _send(self, connection_id: str, frame: str | bytes) -> bool:
        websocket = self._connections.get(connection_id)
        lock = self._send_locks.get(connection_id)
        if websocket is None or lock is None:
            return False
        async with lock:
            try:
                if isinstance(frame, bytes):
                    await websocket.send_bytes(frame)
                else:
                    await websocket.send_text(frame)
            except Exception as e:
                logger.debug(f"Send to {connection_id} failed: {e}")
                return False
        return True
