"""
Peer connection negotiation for the direct variant.

Offers, answers and ICE candidates travel through the server's stateless
signaling relay; all negotiation state lives here. The relay gives no
ordering between candidates and descriptions, so candidates that arrive
before the remote description is set are queued per sending peer and
flushed right after ``setRemoteDescription``.
"""

import asyncio
import logging

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from config import NEGOTIATION_TIMEOUT
from signaling.protocol import Event, Message
from transfer.errors import SessionBusyError, TransferTimeoutError

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "file"


def build_configuration(ice_servers: list[dict]) -> RTCConfiguration:
    servers = []
    for server in ice_servers:
        servers.append(
            RTCIceServer(
                urls=server["urls"],
                username=server.get("username"),
                credential=server.get("credential"),
            )
        )
    return RTCConfiguration(iceServers=servers)


def parse_candidate(data: dict):
    """Build an RTCIceCandidate from its browser JSON form, or None."""
    raw = data.get("candidate")
    if not raw:
        return None  # end-of-candidates marker
    if raw.startswith("candidate:"):
        raw = raw.split(":", 1)[1]
    candidate = candidate_from_sdp(raw)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


class PeerNegotiator:
    """Negotiates at most one peer connection at a time."""

    def __init__(
        self,
        signaling,
        ice_servers: list[dict] | None = None,
        pc_factory=None,
        timeout: float = NEGOTIATION_TIMEOUT,
    ) -> None:
        """
        Args:
            signaling: SignalingClient used to reach the relay.
            ice_servers: iceServers list from ``/api/ice-servers``.
            pc_factory: fn() -> peer connection; defaults to aiortc.
            timeout: seconds to wait for the data channel to open.
        """
        self._signaling = signaling
        self._ice_servers = ice_servers or []
        self._pc_factory = pc_factory or self._default_pc
        self._timeout = timeout
        self._pc = None
        self._remote_id: str | None = None
        self._pending: dict[str, list[dict]] = {}
        self._closed = asyncio.Event()
        self._closed.set()
        self.accept_offers = lambda: False
        self.on_channel = None  # async fn(channel, peer_id, peer_name)

    @property
    def busy(self) -> bool:
        return self._pc is not None

    @property
    def remote_id(self) -> str | None:
        return self._remote_id

    def set_ice_servers(self, ice_servers: list[dict]) -> None:
        self._ice_servers = ice_servers

    def attach(self) -> None:
        self._signaling.on(Event.OFFER, self._on_offer)
        self._signaling.on(Event.ANSWER, self._on_answer)
        self._signaling.on(Event.ICE_CANDIDATE, self._on_candidate)

    def _default_pc(self):
        return RTCPeerConnection(configuration=build_configuration(self._ice_servers))

    async def connect(self, target_id: str):
        """Offer a connection to ``target_id`` and return its open data channel."""
        if self.busy:
            raise SessionBusyError("A peer connection is already being negotiated")

        pc = self._open(target_id)
        channel = pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True)
        opened = asyncio.Event()
        channel.on("open", opened.set)

        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        await self._signaling.emit(
            Event.OFFER,
            {"targetId": target_id, "offer": _describe(pc.localDescription)},
        )

        try:
            await asyncio.wait_for(opened.wait(), timeout=self._timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise TransferTimeoutError(
                f"Data channel to {target_id} did not open within {self._timeout}s"
            )
        return channel

    async def close(self) -> None:
        pc, self._pc = self._pc, None
        self._remote_id = None
        self._pending.clear()
        self._closed.set()
        if pc is not None:
            await pc.close()

    async def wait_closed(self, timeout: float) -> bool:
        """Wait for the remote side to close the connection."""
        try:
            await asyncio.wait_for(self._closed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _open(self, remote_id: str):
        pc = self._pc_factory()
        self._pc = pc
        self._remote_id = remote_id
        self._closed.clear()

        @pc.on("connectionstatechange")
        async def on_state():
            if pc.connectionState in ("failed", "closed") and self._pc is pc:
                logger.info(f"Peer connection to {remote_id} {pc.connectionState}")
                await self.close()

        return pc

    # --- Relay events ---

    async def _on_offer(self, message: Message) -> None:
        data = message.data if isinstance(message.data, dict) else {}
        from_id = data.get("fromId")
        offer = data.get("offer")
        if not from_id or not isinstance(offer, dict):
            return
        if self.busy or not self.accept_offers():
            logger.info(f"Ignoring offer from {data.get('fromName', from_id)}: not accepting")
            self._pending.pop(from_id, None)
            return

        from_name = data.get("fromName", "")
        pc = self._open(from_id)

        @pc.on("datachannel")
        def on_datachannel(channel):
            if self.on_channel is not None:
                asyncio.ensure_future(self.on_channel(channel, from_id, from_name))

        await pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer["type"]))
        await self._flush_candidates(from_id)
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        await self._signaling.emit(
            Event.ANSWER, {"targetId": from_id, "answer": _describe(pc.localDescription)}
        )

    async def _on_answer(self, message: Message) -> None:
        data = message.data if isinstance(message.data, dict) else {}
        answer = data.get("answer")
        if self._pc is None or data.get("fromId") != self._remote_id or not isinstance(answer, dict):
            return
        if self._pc.remoteDescription is not None:
            return
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=answer["sdp"], type=answer["type"])
        )
        await self._flush_candidates(self._remote_id)

    async def _on_candidate(self, message: Message) -> None:
        data = message.data if isinstance(message.data, dict) else {}
        from_id = data.get("fromId")
        candidate = data.get("candidate")
        if not from_id or not isinstance(candidate, dict):
            return
        pc = self._pc
        if pc is not None and from_id == self._remote_id and pc.remoteDescription is not None:
            await self._add_candidate(candidate)
        else:
            self._pending.setdefault(from_id, []).append(candidate)

    async def _flush_candidates(self, peer_id: str) -> None:
        for candidate in self._pending.pop(peer_id, []):
            await self._add_candidate(candidate)

    async def _add_candidate(self, data: dict) -> None:
        try:
            candidate = parse_candidate(data)
        except (AssertionError, ValueError, IndexError) as e:
            logger.debug(f"Ignoring malformed ICE candidate: {e}")
            return
        if candidate is not None:
            await self._pc.addIceCandidate(candidate)


def _describe(description) -> dict:
    return {"sdp": description.sdp, "type": description.type}
