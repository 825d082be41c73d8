"""
Server-side event gateway.

Dispatches the inbound frames of each connection to the directory, the
signaling relay and the relayed-transfer registry, and owns the single
teardown routine run when a connection goes away.
"""

import asyncio
import logging
import time

from pydantic import ValidationError

from config import MAX_MESSAGE_SIZE, SESSION_IDLE_TIMEOUT, SESSION_SWEEP_INTERVAL
from directory.models import PeerRole
from directory.service import ASSIGNABLE_ROLES
from signaling.protocol import Ack, Event, Message, ProtocolError, decode
from signaling.relay import RELAYED_KINDS
from transfer.errors import SessionBusyError
from transfer.models import FileMeta

logger = logging.getLogger(__name__)


class EventGateway:
    """Routes control-channel events for every connection."""

    def __init__(self, directory, connections, registry, relay) -> None:
        self._directory = directory
        self._connections = connections
        self._registry = registry
        self._relay = relay
        self._sweep_task: asyncio.Task | None = None
        self._handlers = {
            Event.SET_ROLE: self._on_set_role,
            Event.TRANSFER_REQUEST: self._on_transfer_request,
            Event.FILE_CHUNK: self._on_file_chunk,
            Event.TRANSFER_DONE: self._on_transfer_done,
            Event.TRANSFER_CANCEL: self._on_transfer_cancel,
        }
        for kind in RELAYED_KINDS:
            self._handlers[kind] = self._on_signal

    # --- Connection lifecycle ---

    async def open(self, websocket) -> str:
        """Accept a connection, register its peer and send its identity."""
        connection_id = await self._connections.connect(websocket)
        peer = await self._directory.register(connection_id)
        await self._connections.send_event(
            connection_id, Event.SELF_IDENTITY, {"id": peer.id, "name": peer.name}
        )
        return connection_id

    async def teardown(self, connection_id: str) -> None:
        """
        Run once per disconnect: cancel the owned relayed session, drop the
        socket, then remove the peer (one directory recompute).
        """
        session = self._registry.end(connection_id)
        self._connections.disconnect(connection_id)
        if session is not None:
            other = session.other(connection_id)
            logger.info(f"Session {session.sender_id} -> {session.receiver_id} cancelled by disconnect")
            await self._connections.send_event(
                other, Event.TRANSFER_CANCEL, {"fromId": connection_id}
            )
        await self._directory.remove(connection_id)

    async def handle_frame(self, connection_id: str, frame: str | bytes) -> None:
        """Decode and dispatch one inbound frame."""
        if len(frame) > MAX_MESSAGE_SIZE:
            logger.warning(
                f"Dropping {len(frame)}-byte frame from {connection_id}: "
                f"exceeds {MAX_MESSAGE_SIZE}"
            )
            return
        try:
            message = decode(frame)
        except ProtocolError as e:
            logger.debug(f"Ignoring malformed frame from {connection_id}: {e}")
            return

        handler = self._handlers.get(message.event)
        if handler is None:
            logger.debug(f"Ignoring unknown event {message.event!r} from {connection_id}")
            return

        try:
            result = await handler(connection_id, message)
        except Exception as e:
            logger.error(f"Handler for {message.event} failed: {e}", exc_info=True)
            return

        if message.id is not None and result is not None:
            await self._connections.send_ack(connection_id, message.id, result)

    # --- Idle-session sweeper ---

    def start_sweeper(
        self,
        interval: float = SESSION_SWEEP_INTERVAL,
        timeout: float = SESSION_IDLE_TIMEOUT,
    ) -> None:
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval, timeout))

    async def stop_sweeper(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self, interval: float, timeout: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.sweep_idle(timeout)

    async def sweep_idle(self, timeout: float) -> int:
        """Cancel relayed sessions with no traffic for ``timeout`` seconds."""
        expired = self._registry.expired(timeout)
        for session in expired:
            self._registry.end(session.sender_id)
            logger.info(
                f"Session {session.sender_id} -> {session.receiver_id} idle, cancelling"
            )
            await self._connections.send_event(
                session.receiver_id, Event.TRANSFER_CANCEL, {"fromId": session.sender_id}
            )
            await self._connections.send_event(
                session.sender_id, Event.TRANSFER_CANCEL, {"fromId": session.receiver_id}
            )
        return len(expired)

    def status(self) -> dict:
        peers = self._directory.peers()
        return {
            "peers": len(peers),
            "senders": sum(1 for p in peers if p.role == PeerRole.SENDER),
            "receivers": sum(1 for p in peers if p.role == PeerRole.RECEIVER),
            "active_sessions": len(self._registry.sessions()),
        }

    # --- Handlers ---

    async def _on_set_role(self, connection_id: str, message: Message):
        role = message.data
        if not isinstance(role, str) or role not in ASSIGNABLE_ROLES:
            logger.debug(f"Ignoring set-role {role!r} from {connection_id}")
            return None

        peer = self._directory.get(connection_id)
        if peer is not None and peer.role.value != role:
            await self._cancel_owned_session(connection_id)

        await self._directory.set_role(connection_id, role)
        await self._connections.send_event(connection_id, Event.ROLE_CONFIRMED, role)
        return None

    async def _on_signal(self, connection_id: str, message: Message):
        await self._relay.forward(message.event, connection_id, message.data)
        return None

    async def _on_transfer_request(self, connection_id: str, message: Message):
        data = message.data
        if not isinstance(data, dict) or not isinstance(data.get("targetId"), str):
            logger.debug(f"Ignoring malformed transfer-request from {connection_id}")
            return None
        try:
            meta = FileMeta.model_validate(data.get("meta"))
        except ValidationError:
            logger.debug(f"Ignoring transfer-request with bad metadata from {connection_id}")
            return None

        target_id = data["targetId"]
        target = self._directory.get(target_id)
        if target is None:
            return Ack.NO_PEER
        if target_id == connection_id or target.role != PeerRole.RECEIVER:
            return Ack.NOT_RECEIVER

        try:
            session = self._registry.begin(connection_id, target_id, meta)
        except SessionBusyError:
            logger.info(f"Rejecting transfer-request {connection_id} -> {target_id}: busy")
            return Ack.BUSY

        sender = self._directory.get(connection_id)
        delivered = await self._connections.send_event(
            target_id,
            Event.TRANSFER_INCOMING,
            {
                "fromId": connection_id,
                "fromName": sender.name if sender else "Unknown",
                "meta": meta.wire(),
            },
        )
        if not delivered:
            self._registry.end(session.sender_id)
            return Ack.NO_PEER
        return Ack.OK

    async def _on_file_chunk(self, connection_id: str, message: Message):
        data = message.data
        if message.payload is None or not isinstance(data, dict):
            logger.debug(f"Ignoring malformed file-chunk from {connection_id}")
            return None

        target_id = data.get("targetId")
        session = self._registry.find(connection_id, target_id)
        if session is None or not self._directory.exists(target_id):
            if session is not None:
                self._registry.end(connection_id)
            return Ack.NO_PEER

        delivered = await self._connections.send_binary(
            target_id,
            Event.FILE_CHUNK,
            {"fromId": connection_id, "chunkIndex": data.get("chunkIndex")},
            message.payload,
        )
        if not delivered:
            self._registry.end(connection_id)
            return Ack.NO_PEER
        session.touch(len(message.payload))
        return Ack.OK

    async def _on_transfer_done(self, connection_id: str, message: Message):
        data = message.data
        target_id = data.get("targetId") if isinstance(data, dict) else None
        session = self._registry.find(connection_id, target_id)
        if session is None:
            logger.debug(f"Ignoring transfer-done from {connection_id}: no session")
            return None
        self._registry.end(connection_id)
        logger.info(
            f"Session {connection_id} -> {target_id} done: "
            f"{session.chunks_forwarded} chunks, {session.bytes_forwarded} bytes "
            f"in {time.monotonic() - session.started_at:.1f}s"
        )
        await self._connections.send_event(
            target_id, Event.TRANSFER_DONE, {"fromId": connection_id}
        )
        return Ack.OK

    async def _on_transfer_cancel(self, connection_id: str, message: Message):
        data = message.data
        target_id = data.get("targetId") if isinstance(data, dict) else None
        if not isinstance(target_id, str):
            return None
        session = self._registry.session_for(connection_id)
        if session is not None and session.other(connection_id) == target_id:
            self._registry.end(connection_id)
        if self._directory.exists(target_id):
            await self._connections.send_event(
                target_id, Event.TRANSFER_CANCEL, {"fromId": connection_id}
            )
        return Ack.OK

    async def _cancel_owned_session(self, connection_id: str) -> None:
        session = self._registry.end(connection_id)
        if session is None:
            return
        other = session.other(connection_id)
        logger.info(f"Session {session.sender_id} -> {session.receiver_id} cancelled by role change")
        await self._connections.send_event(
            other, Event.TRANSFER_CANCEL, {"fromId": connection_id}
        )
        await self._connections.send_event(
            connection_id, Event.TRANSFER_CANCEL, {"fromId": other}
        )
