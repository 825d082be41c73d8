"""
Peer Client: the endpoint side of Dropbridge.

Connects to the server, keeps this peer's identity, role and visible
peer list, and runs transfers in either variant. State changes are
reported through ``on_event`` callbacks; received files are handed to
``on_file`` callbacks.
"""

import asyncio
import logging
import mimetypes
import os
from urllib.parse import urlsplit, urlunsplit

import httpx

from client.connection import DISCONNECTED, SignalingClient
from client.direct import DirectReceiver, DirectSender
from client.negotiation import PeerNegotiator
from client.receiver import TransferReceiver
from client.relayed import RelayedReceiver, RelayedSender
from config import DEFAULT_CONTENT_TYPE, DRAIN_TIMEOUT, ICE_LOOKUP_TIMEOUT
from directory.models import PeerRole
from signaling.ice import default_ice_servers
from signaling.protocol import Event, Message
from transfer.errors import PeerUnavailableError, SessionBusyError
from transfer.models import FileMeta, TransferInfo, TransferState, TransferVariant
from transfer.session import SessionSlot

logger = logging.getLogger(__name__)

IDENTITY_TIMEOUT = 10.0  # seconds to wait for self-identity after connecting


def websocket_url(server_url: str) -> str:
    """``http://host:3000`` -> ``ws://host:3000/ws``."""
    parts = urlsplit(server_url)
    scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
    path = parts.path.rstrip("/") + "/ws"
    return urlunsplit((scheme, parts.netloc, path, "", ""))


def describe_file(path: str) -> FileMeta:
    content_type, _ = mimetypes.guess_type(path)
    return FileMeta(
        file_name=os.path.basename(path),
        file_size=os.path.getsize(path),
        file_type=content_type or DEFAULT_CONTENT_TYPE,
    )


class PeerClient:
    """One Dropbridge endpoint."""

    def __init__(self, server_url: str, signaling: SignalingClient | None = None) -> None:
        self.server_url = server_url.rstrip("/")
        self.signaling = signaling or SignalingClient(websocket_url(self.server_url))
        self.peer_id: str | None = None
        self.name: str | None = None
        self.role = PeerRole.NONE
        self.peers: list[dict] = []
        self._identified = asyncio.Event()
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._file_callbacks: list = []  # async fn(AssembledFile, TransferInfo)

        # Busy flags: one send and one receive at a time, across both variants
        self._send_slot = SessionSlot()
        self._receive_slot = SessionSlot()

        self.relayed_sender = RelayedSender(self.signaling, self._send_slot, emit=self._emit)
        self.relayed_receiver = RelayedReceiver(
            self.signaling,
            TransferReceiver(
                self._receive_slot, TransferVariant.RELAYED,
                emit=self._emit, on_file=self._deliver_file,
            ),
        )
        self.direct_sender = DirectSender(self._send_slot, emit=self._emit)
        self.direct_receiver = DirectReceiver(
            TransferReceiver(
                self._receive_slot, TransferVariant.DIRECT,
                emit=self._emit, on_file=self._deliver_file,
            )
        )
        self.negotiator = PeerNegotiator(self.signaling, default_ice_servers())
        self.negotiator.accept_offers = self._accepting_offers
        self.negotiator.on_channel = self._on_incoming_channel

    # --- Callbacks ---

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data)."""
        self._event_callbacks.append(callback)

    def on_file(self, callback) -> None:
        """Register callback: async fn(AssembledFile, TransferInfo)."""
        self._file_callbacks.append(callback)

    async def _emit(self, event_type: str, data) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

        if event_type == "transfer_state":
            await self._notify(data)

    async def _notify(self, data: dict) -> None:
        """Generate user-facing notifications for terminal states."""
        state = data.get("state")
        file_name = data["meta"]["file_name"]
        notification = None
        if state == TransferState.COMPLETED:
            verb = "sent" if data.get("direction") == "sending" else "received"
            notification = {"type": "success", "message": f"'{file_name}' {verb} successfully!"}
        elif state == TransferState.CANCELLED:
            notification = {
                "type": "error",
                "message": f"Transfer of '{file_name}' stopped: {data.get('error_message')}",
            }
        if notification:
            for cb in self._event_callbacks:
                try:
                    await cb("notification", notification)
                except Exception as e:
                    logger.error(f"Event callback error: {e}")

    async def _deliver_file(self, assembled, info: TransferInfo) -> None:
        for cb in self._file_callbacks:
            try:
                await cb(assembled, info)
            except Exception as e:
                logger.error(f"File callback error: {e}", exc_info=True)
        if info.variant == TransferVariant.DIRECT:
            # The receiver holds every byte; closing tells the sender it is done
            await self.negotiator.close()

    # --- Lifecycle ---

    async def start(self) -> None:
        """Connect, wait for our identity and fetch ICE servers."""
        self.signaling.on(Event.SELF_IDENTITY, self._on_self_identity)
        self.signaling.on(Event.ROLE_CONFIRMED, self._on_role_confirmed)
        self.signaling.on(Event.PEER_LIST, self._on_peer_list)
        self.signaling.on(DISCONNECTED, self._on_disconnected)
        self.relayed_sender.attach()
        self.relayed_receiver.attach()
        self.negotiator.attach()

        await self.signaling.connect()
        await asyncio.wait_for(self._identified.wait(), timeout=IDENTITY_TIMEOUT)
        self.negotiator.set_ice_servers(await self.fetch_ice_servers())

    async def stop(self) -> None:
        await self.negotiator.close()
        await self.signaling.close()

    async def fetch_ice_servers(self, client: httpx.AsyncClient | None = None) -> list[dict]:
        """Ask the server for ICE servers; fall back to public STUN."""
        url = f"{self.server_url}/api/ice-servers"
        try:
            if client is None:
                async with httpx.AsyncClient(timeout=ICE_LOOKUP_TIMEOUT) as own_client:
                    resp = await own_client.get(url)
            else:
                resp = await client.get(url)
            resp.raise_for_status()
            servers = resp.json().get("iceServers")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning(f"ICE server lookup failed, using defaults: {e}")
            return default_ice_servers()
        if not isinstance(servers, list) or not servers:
            return default_ice_servers()
        return servers

    async def set_role(self, role: str | PeerRole) -> None:
        """Declare sender or receiver; cancels any transfer of the old role."""
        new_role = PeerRole(role)
        if new_role != self.role:
            await self.cancel()
        self.role = new_role
        self.relayed_receiver.enabled = new_role == PeerRole.RECEIVER
        if new_role == PeerRole.SENDER:
            self.peers = []
        await self.signaling.emit(Event.SET_ROLE, new_role.value)

    # --- Transfers ---

    def find_peer(self, target: str) -> dict | None:
        """Look a visible receiver up by id or display name."""
        for peer in self.peers:
            if target in (peer.get("id"), peer.get("name")):
                return peer
        return None

    async def send_file(
        self, target_id: str, path: str, variant: TransferVariant = TransferVariant.RELAYED
    ) -> TransferInfo:
        """
        Send the file at ``path`` to a visible receiver.

        Raises SessionBusyError if a send is active and PeerUnavailableError
        if ``target_id`` is not a receiver visible to this sender.
        """
        if self._send_slot.busy:
            raise SessionBusyError("A transfer is already in progress")
        peer = self.find_peer(target_id)
        if self.role != PeerRole.SENDER or peer is None:
            raise PeerUnavailableError(f"{target_id} is not a visible receiver")

        meta = describe_file(path)
        with open(path, "rb") as source:
            if variant == TransferVariant.RELAYED:
                return await self.relayed_sender.send(peer["id"], source, meta, peer["name"])

            async def open_channel():
                return await self.negotiator.connect(peer["id"])

            info = None
            try:
                info = await self.direct_sender.send(
                    open_channel, source, meta, peer["id"], peer["name"]
                )
                return info
            finally:
                if info is not None and info.state == TransferState.COMPLETED:
                    await self.negotiator.wait_closed(timeout=DRAIN_TIMEOUT)
                await self.negotiator.close()

    async def cancel(self) -> None:
        """Cancel whatever transfer this endpoint is running."""
        await self.relayed_sender.cancel()
        await self.direct_sender.cancel()
        await self.relayed_receiver.cancel()
        if await self.direct_receiver.cancel():
            await self.negotiator.close()

    def _accepting_offers(self) -> bool:
        return self.role == PeerRole.RECEIVER and not self._receive_slot.busy

    async def _on_incoming_channel(self, channel, peer_id: str, peer_name: str) -> None:
        self.direct_receiver.attach(channel, peer_id, peer_name)

    # --- Control-channel events ---

    async def _on_self_identity(self, message: Message) -> None:
        data = message.data if isinstance(message.data, dict) else {}
        self.peer_id = data.get("id")
        self.name = data.get("name")
        logger.info(f"Connected as {self.name} ({self.peer_id})")
        self._identified.set()
        await self._emit("self_identity", data)

    async def _on_role_confirmed(self, message: Message) -> None:
        logger.info(f"Role: {message.data}")
        await self._emit("role_confirmed", message.data)

    async def _on_peer_list(self, message: Message) -> None:
        peers = message.data if isinstance(message.data, list) else []
        if self.role == PeerRole.SENDER:
            self.peers = [p for p in peers if isinstance(p, dict)]
            await self._emit("peer_list", self.peers)

    async def _on_disconnected(self, message: Message) -> None:
        logger.warning("Lost connection to server")
        self.peers = []
        await self._emit("disconnected", None)
