"""
Peer directory.

Process-wide registry of connected peers and their declared role.
All mutations go through one lock (single writer); every mutation that
changes something produces exactly one recomputation of all visibility
views, which is handed to the registered listeners.
"""

import asyncio
import logging

from directory.identity import generate_peer_name
from directory.models import Peer, PeerRole
from directory.visibility import view_for, views

logger = logging.getLogger(__name__)

ASSIGNABLE_ROLES = {PeerRole.SENDER.value, PeerRole.RECEIVER.value}


class DirectoryError(Exception):
    """Raised when the transport hands the directory an impossible event."""


class PeerDirectory:
    """Registry of connected peers with role-based visibility."""

    def __init__(self, name_factory=generate_peer_name) -> None:
        self._peers: dict[str, Peer] = {}
        self._lock = asyncio.Lock()
        self._listeners: list = []  # async fn(views: dict[str, list[Peer]])
        self._name_factory = name_factory

    def on_change(self, callback) -> None:
        """Register a listener for recomputed views."""
        self._listeners.append(callback)

    # --- Reads (lock-free) ---

    def exists(self, connection_id: str) -> bool:
        return connection_id in self._peers

    def get(self, connection_id: str) -> Peer | None:
        return self._peers.get(connection_id)

    def peers(self) -> list[Peer]:
        return list(self._peers.values())

    def view_for(self, connection_id: str) -> list[Peer]:
        return view_for(self._peers, connection_id)

    # --- Mutations ---

    async def register(self, connection_id: str) -> Peer:
        """Add a peer with a generated name and role ``none``."""
        async with self._lock:
            if connection_id in self._peers:
                raise DirectoryError(f"Connection {connection_id} already registered")
            peer = Peer(id=connection_id, name=self._name_factory())
            self._peers[connection_id] = peer
            logger.info(f"[+] {peer.name} ({connection_id})")
            await self._publish()
        return peer

    async def set_role(self, connection_id: str, role) -> bool:
        """
        Set a peer's role.

        Unknown roles and unknown ids are dropped without error.
        Returns True if the directory changed.
        """
        async with self._lock:
            dirty = self._apply_role(connection_id, role)
            if dirty:
                await self._publish()
        return dirty

    async def remove(self, connection_id: str) -> Peer | None:
        """Remove a peer. Removing an unknown id is a no-op."""
        async with self._lock:
            peer = self._peers.pop(connection_id, None)
            if peer is None:
                return None
            logger.info(f"[-] {peer.name} ({connection_id})")
            await self._publish()
        return peer

    def _apply_role(self, connection_id: str, role) -> bool:
        peer = self._peers.get(connection_id)
        if peer is None:
            return False
        value = role.value if isinstance(role, PeerRole) else role
        if not isinstance(value, str) or value not in ASSIGNABLE_ROLES:
            logger.debug(f"Ignoring invalid role {role!r} from {connection_id}")
            return False
        new_role = PeerRole(value)
        if peer.role == new_role:
            return False
        peer.role = new_role
        logger.info(f"[~] {peer.name} set role: {new_role.value}")
        return True

    async def _publish(self) -> None:
        """Recompute every view and hand the snapshot to listeners."""
        snapshot = views(self._peers)
        for cb in self._listeners:
            try:
                await cb(snapshot)
            except Exception as e:
                logger.error(f"Directory listener error: {e}", exc_info=True)
