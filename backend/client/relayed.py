"""
Relayed transfer variant.

Every chunk travels through the server over the control channel. Flow
control is explicit: the sender keeps at most one chunk unacknowledged,
reading the next chunk only after the relay answers ``ok``. A ``no-peer``
answer aborts the session at once; nothing is retried.
"""

import asyncio
import logging
from typing import BinaryIO

from pydantic import ValidationError

from client.connection import DISCONNECTED
from client.receiver import TransferReceiver
from config import ACK_TIMEOUT, RELAY_CHUNK_SIZE
from signaling.protocol import Ack, Event, Message
from transfer.errors import TransferTimeoutError
from transfer.models import FileMeta, TransferDirection, TransferInfo, TransferVariant
from transfer.session import SessionSlot, TransferSession

logger = logging.getLogger(__name__)


async def _ignore_event(event_type: str, data: dict) -> None:
    return None


class RelayedSender:
    """Streams one file at a time through the relay."""

    def __init__(
        self,
        signaling,
        slot: SessionSlot,
        emit=_ignore_event,
        chunk_size: int = RELAY_CHUNK_SIZE,
        ack_timeout: float = ACK_TIMEOUT,
    ) -> None:
        self._signaling = signaling
        self._slot = slot
        self._emit = emit
        self._chunk_size = chunk_size
        self._ack_timeout = ack_timeout

    def attach(self) -> None:
        """Listen for cancellation coming back from the receiver or relay."""
        self._signaling.on(Event.TRANSFER_CANCEL, self._on_cancel)
        self._signaling.on(DISCONNECTED, self._on_disconnect)

    async def send(
        self, target_id: str, source: BinaryIO, meta: FileMeta, peer_name: str = ""
    ) -> TransferInfo:
        """
        Send ``meta.file_size`` bytes read from ``source`` to ``target_id``.

        Raises SessionBusyError (without touching the active session) if a
        send is already running. Every other failure ends the session in
        CANCELLED with ``error_message`` set.
        """
        session = TransferSession.create(
            target_id, meta, TransferDirection.SENDING, TransferVariant.RELAYED, peer_name
        )
        self._slot.acquire(session)
        try:
            ack = await self._signaling.request(
                Event.TRANSFER_REQUEST,
                {"targetId": target_id, "meta": meta.wire()},
                timeout=self._ack_timeout,
            )
            if ack != Ack.OK:
                await self._fail(session, f"Transfer refused: {ack}")
                return session.info

            session.metadata_sent()
            await self._emit("transfer_state", session.info.model_dump())
            logger.info(f"Sending '{meta.file_name}' to {peer_name or target_id}")

            chunk_index = 0
            while not session.finished:
                chunk = await asyncio.to_thread(source.read, self._chunk_size)
                if not chunk:
                    break

                ack = await self._signaling.request_binary(
                    Event.FILE_CHUNK,
                    {"targetId": target_id, "chunkIndex": chunk_index},
                    chunk,
                    timeout=self._ack_timeout,
                )
                if session.finished:
                    break
                if ack == Ack.NO_PEER:
                    await self._fail(session, "Receiver disconnected during transfer")
                    return session.info
                if ack != Ack.OK:
                    await self._fail(session, f"Unexpected acknowledgement: {ack}")
                    return session.info

                session.record_chunk(len(chunk))
                chunk_index += 1
                if session.progress_due():
                    await self._emit("transfer_progress", session.info.model_dump())

            if session.finished:
                return session.info

            await self._signaling.emit(Event.TRANSFER_DONE, {"targetId": target_id})
            session.complete()
            logger.info(f"'{meta.file_name}' sent ({session.info.transferred_bytes} bytes)")
            await self._emit("transfer_state", session.info.model_dump())

        except TransferTimeoutError as e:
            await self._fail(session, str(e))
            await self._notify_peer(target_id)
        except ConnectionError as e:
            await self._fail(session, str(e))
        except asyncio.CancelledError:
            await self._fail(session, "Cancelled")
            await self._notify_peer(target_id)
        finally:
            self._slot.release(session)

        return session.info

    async def cancel(self) -> bool:
        """User-initiated cancel of the active send."""
        session = self._slot.current
        if session is None:
            return False
        await self._fail(session, "Cancelled by user")
        await self._notify_peer(session.peer_id)
        return True

    async def _fail(self, session: TransferSession, reason: str) -> None:
        if session.cancel(reason):
            logger.warning(f"Send of '{session.meta.file_name}' cancelled: {reason}")
            await self._emit("transfer_state", session.info.model_dump())

    async def _notify_peer(self, target_id: str) -> None:
        try:
            await self._signaling.emit(Event.TRANSFER_CANCEL, {"targetId": target_id})
        except ConnectionError:
            pass

    async def _on_cancel(self, message: Message) -> None:
        session = self._slot.current
        data = message.data if isinstance(message.data, dict) else {}
        if session is not None and data.get("fromId") == session.peer_id:
            await self._fail(session, "Receiver cancelled the transfer")

    async def _on_disconnect(self, message: Message) -> None:
        session = self._slot.current
        if session is not None:
            await self._fail(session, "Lost connection to server")


class RelayedReceiver:
    """Translates relayed control-channel events for a TransferReceiver."""

    def __init__(self, signaling, receiver: TransferReceiver) -> None:
        self._signaling = signaling
        self._receiver = receiver
        self.enabled = False  # only a peer in receiver role accepts transfers

    def attach(self) -> None:
        self._signaling.on(Event.TRANSFER_INCOMING, self._on_incoming)
        self._signaling.on(Event.FILE_CHUNK, self._on_chunk)
        self._signaling.on(Event.TRANSFER_DONE, self._on_done)
        self._signaling.on(Event.TRANSFER_CANCEL, self._on_cancel)
        self._signaling.on(DISCONNECTED, self._on_disconnect)

    async def cancel(self) -> bool:
        """User-initiated cancel; tells the sender through the relay."""
        session = self._receiver.session
        if session is None:
            return False
        await self._receiver.cancelled(session.peer_id, "Cancelled by user")
        await self._signaling.emit(Event.TRANSFER_CANCEL, {"targetId": session.peer_id})
        return True

    async def _on_incoming(self, message: Message) -> None:
        if not self.enabled or not isinstance(message.data, dict):
            return
        data = message.data
        try:
            meta = FileMeta.model_validate(data.get("meta"))
        except ValidationError:
            logger.debug("Ignoring transfer-incoming with bad metadata")
            return
        from_id = data.get("fromId")
        if not await self._receiver.begin(from_id, data.get("fromName", ""), meta):
            # The relay already accepted this session; release it on both ends
            await self._signaling.emit(Event.TRANSFER_CANCEL, {"targetId": from_id})

    async def _on_chunk(self, message: Message) -> None:
        if message.payload is None or not isinstance(message.data, dict):
            return
        await self._receiver.chunk(message.data.get("fromId"), message.payload)

    async def _on_done(self, message: Message) -> None:
        if isinstance(message.data, dict):
            await self._receiver.done(message.data.get("fromId"))

    async def _on_cancel(self, message: Message) -> None:
        if isinstance(message.data, dict):
            await self._receiver.cancelled(
                message.data.get("fromId"), "Sender cancelled the transfer"
            )

    async def _on_disconnect(self, message: Message) -> None:
        await self._receiver.cancelled(None, "Lost connection to server")
