"""
Signaling relay for the direct transfer variant.

Forwards offer / answer / ice-candidate messages between two peers.
Holds no negotiation state: a message for a peer that is gone is simply
dropped, since the destination may disconnect mid-negotiation.
"""

import logging

from signaling.protocol import Event

logger = logging.getLogger(__name__)

# event name -> key of the negotiation payload inside the message
RELAYED_KINDS = {
    Event.OFFER: "offer",
    Event.ANSWER: "answer",
    Event.ICE_CANDIDATE: "candidate",
}


class SignalingRelay:
    """Stateless forwarder between two identified peers."""

    def __init__(self, directory, deliver) -> None:
        """
        Args:
            directory: PeerDirectory used to validate destinations.
            deliver: async fn(connection_id, event, data) sending one event.
        """
        self._directory = directory
        self._deliver = deliver

    async def forward(self, kind: str, source_id: str, data) -> bool:
        """
        Forward one negotiation message from ``source_id``.

        Returns True if the message was delivered, False if dropped.
        """
        key = RELAYED_KINDS.get(kind)
        if key is None or not isinstance(data, dict):
            logger.debug(f"Dropping malformed {kind} from {source_id}")
            return False

        target_id = data.get("targetId")
        if not isinstance(target_id, str) or not self._directory.exists(target_id):
            logger.debug(f"Dropping {kind} from {source_id}: target {target_id} gone")
            return False

        outbound = {"fromId": source_id, key: data.get(key)}
        if kind == Event.OFFER:
            source = self._directory.get(source_id)
            outbound["fromName"] = source.name if source else "Unknown"

        await self._deliver(target_id, kind, outbound)
        return True
