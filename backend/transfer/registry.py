"""
Server-side registry of relayed transfer sessions.

Tracks which sender is streaming to which receiver so that both busy
flags are enforced by the relay, so that a disconnect can cancel the
counterpart, and so that idle sessions can be swept.
"""

import logging
import time
from dataclasses import dataclass, field

from transfer.errors import SessionBusyError
from transfer.models import FileMeta

logger = logging.getLogger(__name__)


@dataclass
class RelaySession:
    sender_id: str
    receiver_id: str
    meta: FileMeta
    started_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    chunks_forwarded: int = 0
    bytes_forwarded: int = 0

    def other(self, connection_id: str) -> str:
        return self.receiver_id if connection_id == self.sender_id else self.sender_id

    def touch(self, byte_count: int = 0) -> None:
        self.last_activity = time.monotonic()
        if byte_count:
            self.chunks_forwarded += 1
            self.bytes_forwarded += byte_count


class RelaySessionRegistry:
    """At most one relayed session per connection, in either role."""

    def __init__(self) -> None:
        self._by_connection: dict[str, RelaySession] = {}

    def is_busy(self, connection_id: str) -> bool:
        return connection_id in self._by_connection

    def session_for(self, connection_id: str) -> RelaySession | None:
        return self._by_connection.get(connection_id)

    def find(self, sender_id: str, receiver_id: str) -> RelaySession | None:
        """The session streaming from ``sender_id`` to ``receiver_id``, if any."""
        session = self._by_connection.get(sender_id)
        if session and session.sender_id == sender_id and session.receiver_id == receiver_id:
            return session
        return None

    def begin(self, sender_id: str, receiver_id: str, meta: FileMeta) -> RelaySession:
        if self.is_busy(sender_id) or self.is_busy(receiver_id):
            raise SessionBusyError(f"{sender_id} or {receiver_id} already in a session")
        session = RelaySession(sender_id=sender_id, receiver_id=receiver_id, meta=meta)
        self._by_connection[sender_id] = session
        self._by_connection[receiver_id] = session
        logger.info(
            f"Relay session {sender_id} -> {receiver_id}: "
            f"'{meta.file_name}' ({meta.file_size} bytes)"
        )
        return session

    def end(self, connection_id: str) -> RelaySession | None:
        """Remove the session owned by ``connection_id`` (either side)."""
        session = self._by_connection.get(connection_id)
        if session is None:
            return None
        self._by_connection.pop(session.sender_id, None)
        self._by_connection.pop(session.receiver_id, None)
        return session

    def sessions(self) -> list[RelaySession]:
        unique = {id(s): s for s in self._by_connection.values()}
        return list(unique.values())

    def expired(self, timeout: float, now: float | None = None) -> list[RelaySession]:
        now = time.monotonic() if now is None else now
        return [s for s in self.sessions() if now - s.last_activity > timeout]
