"""
Receive-side session bookkeeping shared by both transfer variants.

The variant-specific receivers only translate their transport's messages
into begin / chunk / done / cancelled calls on a TransferReceiver.
"""

import logging

from transfer.assembler import AssembledFile, ReceiverAssembler
from transfer.errors import SessionBusyError
from transfer.models import FileMeta, TransferDirection, TransferInfo, TransferVariant
from transfer.session import SessionSlot, TransferSession

logger = logging.getLogger(__name__)


async def _ignore_event(event_type: str, data: dict) -> None:
    return None


async def _ignore_file(assembled: AssembledFile, info: TransferInfo) -> None:
    return None


class TransferReceiver:
    """Owns the receiver's busy slot, session and assembler."""

    def __init__(
        self,
        slot: SessionSlot,
        variant: TransferVariant,
        emit=_ignore_event,
        on_file=_ignore_file,
    ) -> None:
        """
        Args:
            slot: busy flag shared by every receiver of this endpoint.
            variant: which transfer variant feeds this receiver.
            emit: async fn(event_type, data) for UI events.
            on_file: async fn(AssembledFile, TransferInfo) storage handoff.
        """
        self._slot = slot
        self._variant = variant
        self._emit = emit
        self._on_file = on_file
        self._assembler = ReceiverAssembler()
        self._session: TransferSession | None = None

    @property
    def session(self) -> TransferSession | None:
        if self._session is not None and self._session.finished:
            return None
        return self._session

    def _owns(self, peer_id) -> bool:
        session = self.session
        return session is not None and session.peer_id == peer_id

    async def begin(self, peer_id: str, peer_name: str, meta: FileMeta) -> bool:
        """Start receiving. Returns False if this endpoint is already busy."""
        session = TransferSession.create(
            peer_id, meta, TransferDirection.RECEIVING, self._variant, peer_name
        )
        try:
            self._slot.acquire(session)
        except SessionBusyError:
            logger.warning(f"Ignored transfer from {peer_name or peer_id}: already busy")
            return False

        self._session = session
        self._assembler.begin(meta)
        session.metadata_sent()
        logger.info(
            f"Incoming: '{meta.file_name}' ({meta.file_size} bytes) from '{peer_name or peer_id}'"
        )
        await self._emit("transfer_state", session.info.model_dump())
        return True

    async def chunk(self, peer_id: str, data: bytes) -> None:
        """Buffer a chunk; finalizes as soon as the declared size is reached."""
        if not self._owns(peer_id):
            return
        session = self._session
        session.record_chunk(len(data))
        assembled = self._assembler.add_chunk(data)
        if assembled is not None:
            await self._finish(session, assembled)
        elif session.progress_due():
            await self._emit("transfer_progress", session.info.model_dump())

    async def done(self, peer_id: str) -> None:
        """Explicit completion signal from the sender."""
        if not self._owns(peer_id):
            return
        assembled = self._assembler.finish()
        if assembled is not None:
            await self._finish(self._session, assembled)

    async def cancelled(self, peer_id: str | None, reason: str) -> bool:
        """
        Cancel the active session. ``peer_id`` None cancels whatever is
        active (local disconnect). Returns True if a session was cancelled.
        """
        session = self.session
        if session is None or (peer_id is not None and session.peer_id != peer_id):
            return False
        session.cancel(reason)
        self._assembler.discard()
        self._slot.release(session)
        logger.info(f"Receive of '{session.meta.file_name}' cancelled: {reason}")
        await self._emit("transfer_state", session.info.model_dump())
        return True

    async def _finish(self, session: TransferSession, assembled: AssembledFile) -> None:
        if not session.complete():
            return
        self._slot.release(session)
        if assembled.size_mismatch:
            session.info.error_message = (
                f"Received {len(assembled.data)} of {assembled.meta.file_size} bytes"
            )
            await self._emit(
                "notification",
                {
                    "type": "error",
                    "message": f"'{assembled.meta.file_name}' size mismatch: "
                               f"{session.info.error_message}",
                },
            )
        logger.info(f"'{assembled.meta.file_name}' received ({len(assembled.data)} bytes)")
        await self._emit("transfer_state", session.info.model_dump())
        await self._on_file(assembled, session.info)
