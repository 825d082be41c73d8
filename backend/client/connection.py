"""
Peer-side control-channel client.

Connects to the server's ``/ws`` endpoint, dispatches inbound events to
registered handlers in arrival order, and supports request/acknowledge
exchanges (used for transfer-request and every relayed chunk).

Handlers run inside the read loop, so a handler must never wait for an
acknowledgement itself.
"""

import asyncio
import itertools
import logging

import websockets
from websockets.exceptions import ConnectionClosed

from config import ACK_TIMEOUT
from signaling.protocol import Event, Message, ProtocolError, decode, encode_binary, encode_text
from transfer.errors import TransferTimeoutError

logger = logging.getLogger(__name__)

DISCONNECTED = "disconnected"  # local pseudo-event fired when the socket closes


class SignalingClient:
    """WebSocket client for the Dropbridge control channel."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._ws = None
        self._handlers: dict[str, list] = {}  # event -> [async fn(Message)]
        self._acks: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._send_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None

    def on(self, event: str, handler) -> None:
        """Register ``async fn(message)`` for an event."""
        self._handlers.setdefault(event, []).append(handler)

    async def connect(self) -> None:
        self._ws = await websockets.connect(self.url, max_size=None)
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"Connected to {self.url}")

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass

    # --- Outbound ---

    async def emit(self, event: str, data=None) -> None:
        await self._send(encode_text(event, data))

    async def request(self, event: str, data=None, timeout: float = ACK_TIMEOUT) -> str:
        """Send an event and wait for its acknowledgement."""
        ack_id, future = self._new_ack()
        await self._send(encode_text(event, data, ack_id))
        return await self._wait_ack(event, ack_id, future, timeout)

    async def request_binary(
        self, event: str, data: dict, payload: bytes, timeout: float = ACK_TIMEOUT
    ) -> str:
        """Send a binary frame and wait for its acknowledgement."""
        ack_id, future = self._new_ack()
        await self._send(encode_binary(event, data, payload, ack_id))
        return await self._wait_ack(event, ack_id, future, timeout)

    def _new_ack(self) -> tuple[int, asyncio.Future]:
        ack_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._acks[ack_id] = future
        return ack_id, future

    async def _wait_ack(self, event: str, ack_id: int, future, timeout: float) -> str:
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise TransferTimeoutError(f"No acknowledgement for {event} within {timeout}s")
        finally:
            self._acks.pop(ack_id, None)

    async def _send(self, frame: str | bytes) -> None:
        if self._ws is None:
            raise ConnectionError("Not connected")
        async with self._send_lock:
            await self._ws.send(frame)

    # --- Inbound ---

    async def _read_loop(self) -> None:
        try:
            async for frame in self._ws:
                await self.dispatch(frame)
        except ConnectionClosed as e:
            logger.info(f"Control channel closed: {e}")
        finally:
            self._ws = None
            for future in self._acks.values():
                if not future.done():
                    future.set_exception(ConnectionError("Control channel closed"))
            self._acks.clear()
            await self._fire(Message(event=DISCONNECTED))

    async def dispatch(self, frame: str | bytes) -> None:
        """Route one inbound frame to its ack future or handlers."""
        try:
            message = decode(frame)
        except ProtocolError as e:
            logger.debug(f"Ignoring malformed frame: {e}")
            return

        if message.event == Event.ACK:
            future = self._acks.get(message.id)
            if future is not None and not future.done():
                future.set_result(message.data)
            return

        await self._fire(message)

    async def _fire(self, message: Message) -> None:
        for handler in self._handlers.get(message.event, []):
            try:
                await handler(message)
            except Exception as e:
                logger.error(f"Handler for {message.event} failed: {e}", exc_info=True)
