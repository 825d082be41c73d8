"""Role-based visibility: who may see whom in the directory."""

from directory.models import Peer, PeerRole


def view_for(peers: dict[str, Peer], connection_id: str) -> list[Peer]:
    """
    Peers visible to ``connection_id``.

    Senders see every receiver except themselves, in directory order.
    Receivers, undeclared peers and unknown ids see nothing.
    """
    self_peer = peers.get(connection_id)
    if self_peer is None or self_peer.role != PeerRole.SENDER:
        return []
    return [
        p for p in peers.values()
        if p.id != connection_id and p.role == PeerRole.RECEIVER
    ]


def views(peers: dict[str, Peer]) -> dict[str, list[Peer]]:
    """Compute the view of every registered peer."""
    return {peer_id: view_for(peers, peer_id) for peer_id in peers}
