"""
Direct transfer variant.

Bytes travel over a peer-to-peer data channel (aiortc ``RTCDataChannel``)
negotiated through the signaling relay. There is no acknowledgement
protocol: the channel's own ``bufferedAmount`` is the backpressure signal.
The sender pauses once more than BUFFER_HIGH_WATER bytes are queued and
resumes on the edge-triggered ``bufferedamountlow`` event, fired when the
queue falls to BUFFER_LOW_WATER.

Channel messages:
    text   {"type": "meta", "fileName", "fileSize", "fileType"}
    binary one chunk of file data
    text   {"type": "done"}
    text   {"type": "cancel"}
"""

import asyncio
import json
import logging
from typing import BinaryIO

from pydantic import ValidationError

from client.receiver import TransferReceiver
from config import BUFFER_HIGH_WATER, BUFFER_LOW_WATER, DIRECT_CHUNK_SIZE, DRAIN_TIMEOUT
from transfer.errors import TransferError, TransferTimeoutError
from transfer.models import FileMeta, TransferDirection, TransferInfo, TransferVariant
from transfer.session import SessionSlot, TransferSession

logger = logging.getLogger(__name__)

META = "meta"
DONE = "done"
CANCEL = "cancel"


def control_message(kind: str, **fields) -> str:
    return json.dumps({"type": kind, **fields})


async def _ignore_event(event_type: str, data: dict) -> None:
    return None


class DirectSender:
    """Streams one file at a time over an open data channel."""

    def __init__(
        self,
        slot: SessionSlot,
        emit=_ignore_event,
        chunk_size: int = DIRECT_CHUNK_SIZE,
        high_water: int = BUFFER_HIGH_WATER,
        low_water: int = BUFFER_LOW_WATER,
        drain_timeout: float = DRAIN_TIMEOUT,
    ) -> None:
        self._slot = slot
        self._emit = emit
        self._chunk_size = chunk_size
        self._high_water = high_water
        self._low_water = low_water
        self._drain_timeout = drain_timeout
        self._channel = None
        self._drained = asyncio.Event()

    async def send(
        self,
        open_channel,
        source: BinaryIO,
        meta: FileMeta,
        peer_id: str,
        peer_name: str = "",
    ) -> TransferInfo:
        """
        Open a channel with ``await open_channel()`` and stream the file.

        Raises SessionBusyError if a send is already running; every other
        failure ends the session in CANCELLED with ``error_message`` set.
        """
        session = TransferSession.create(
            peer_id, meta, TransferDirection.SENDING, TransferVariant.DIRECT, peer_name
        )
        self._slot.acquire(session)
        channel = None

        def on_buffer_low():
            self._drained.set()

        def on_message(message):
            if isinstance(message, str) and _parse_control(message).get("type") == CANCEL:
                self._latch_cancel(session, "Receiver cancelled the transfer")
                self._drained.set()

        def on_close():
            # The receiver closes the connection once it holds every byte
            delivered = (
                session.info.transferred_bytes >= meta.file_size
                and channel.bufferedAmount == 0
            )
            if delivered and session.complete():
                asyncio.ensure_future(self._emit("transfer_state", session.info.model_dump()))
            else:
                self._latch_cancel(session, "Data channel closed")
            self._drained.set()

        try:
            channel = await open_channel()
            self._channel = channel
            channel.bufferedAmountLowThreshold = self._low_water
            channel.on("bufferedamountlow", on_buffer_low)
            channel.on("message", on_message)
            channel.on("close", on_close)
            if session.finished:
                return session.info

            channel.send(control_message(META, **meta.wire()))
            session.metadata_sent()
            await self._emit("transfer_state", session.info.model_dump())
            logger.info(f"Sending '{meta.file_name}' directly to {peer_name or peer_id}")

            while not session.finished:
                if channel.bufferedAmount > self._high_water:
                    await self._wait_buffer(channel, session, self._low_water)
                    continue

                chunk = await asyncio.to_thread(source.read, self._chunk_size)
                if not chunk:
                    break
                channel.send(chunk)
                session.record_chunk(len(chunk))
                if session.progress_due():
                    await self._emit("transfer_progress", session.info.model_dump())

            if session.finished:
                return session.info

            channel.send(control_message(DONE))
            # Let the queue empty before reporting success
            channel.bufferedAmountLowThreshold = 0
            await self._wait_buffer(channel, session, 0)
            if session.complete():
                logger.info(f"'{meta.file_name}' sent ({session.info.transferred_bytes} bytes)")
                await self._emit("transfer_state", session.info.model_dump())

        except TransferError as e:
            await self._fail(session, str(e))
        except asyncio.CancelledError:
            await self._fail(session, "Cancelled")
        except Exception as e:
            logger.error(f"Direct send of '{meta.file_name}' failed: {e}")
            await self._fail(session, str(e))
        finally:
            if channel is not None:
                channel.remove_listener("bufferedamountlow", on_buffer_low)
                channel.remove_listener("message", on_message)
                channel.remove_listener("close", on_close)
            self._channel = None
            self._slot.release(session)

        return session.info

    async def cancel(self) -> bool:
        """User-initiated cancel of the active send."""
        session = self._slot.current
        if session is None:
            return False
        await self._fail(session, "Cancelled by user")
        channel = self._channel
        if channel is not None and channel.readyState == "open":
            channel.send(control_message(CANCEL))
        self._drained.set()
        return True

    async def _wait_buffer(self, channel, session: TransferSession, level: int) -> None:
        """Suspend until the channel's queue is at or below ``level``."""
        while channel.bufferedAmount > level and not session.finished:
            self._drained.clear()
            if channel.bufferedAmount <= level:
                break
            try:
                await asyncio.wait_for(self._drained.wait(), timeout=self._drain_timeout)
            except asyncio.TimeoutError:
                raise TransferTimeoutError(
                    f"Data channel did not drain within {self._drain_timeout}s"
                )

    async def _fail(self, session: TransferSession, reason: str) -> None:
        if session.cancel(reason):
            logger.warning(f"Send of '{session.meta.file_name}' cancelled: {reason}")
            await self._emit("transfer_state", session.info.model_dump())

    def _latch_cancel(self, session: TransferSession, reason: str) -> None:
        """Cancel from a synchronous channel callback."""
        if session.cancel(reason):
            logger.warning(f"Send of '{session.meta.file_name}' cancelled: {reason}")
            asyncio.ensure_future(self._emit("transfer_state", session.info.model_dump()))


class DirectReceiver:
    """Feeds data-channel messages, in order, into a TransferReceiver."""

    _CLOSED = object()

    def __init__(self, receiver: TransferReceiver) -> None:
        self._receiver = receiver
        self._channel = None
        self._task: asyncio.Task | None = None

    def attach(self, channel, peer_id: str, peer_name: str = "") -> asyncio.Task:
        """Start consuming ``channel``; returns the consumer task."""
        queue: asyncio.Queue = asyncio.Queue()
        channel.on("message", queue.put_nowait)
        channel.on("close", lambda: queue.put_nowait(self._CLOSED))
        self._channel = channel
        self._task = asyncio.create_task(self._pump(queue, peer_id, peer_name))
        return self._task

    async def cancel(self) -> bool:
        session = self._receiver.session
        if session is None:
            return False
        await self._receiver.cancelled(session.peer_id, "Cancelled by user")
        if self._channel is not None and self._channel.readyState == "open":
            self._channel.send(control_message(CANCEL))
        return True

    async def _pump(self, queue: asyncio.Queue, peer_id: str, peer_name: str) -> None:
        while True:
            message = await queue.get()
            if message is self._CLOSED:
                await self._receiver.cancelled(peer_id, "Data channel closed")
                return
            await self.handle_message(peer_id, peer_name, message)

    async def handle_message(self, peer_id: str, peer_name: str, message) -> None:
        if isinstance(message, (bytes, bytearray)):
            await self._receiver.chunk(peer_id, bytes(message))
            return

        control = _parse_control(message)
        kind = control.get("type")
        if kind == META:
            try:
                meta = FileMeta.model_validate(control)
            except ValidationError:
                logger.debug(f"Ignoring bad metadata from {peer_id}")
                return
            await self._receiver.begin(peer_id, peer_name, meta)
        elif kind == DONE:
            await self._receiver.done(peer_id)
        elif kind == CANCEL:
            await self._receiver.cancelled(peer_id, "Sender cancelled the transfer")
        else:
            logger.debug(f"Ignoring unknown data-channel message from {peer_id}")


def _parse_control(message: str) -> dict:
    try:
        control = json.loads(message)
    except ValueError:
        return {}
    return control if isinstance(control, dict) else {}
