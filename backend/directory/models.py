"""Pydantic models for the peer directory."""

from enum import Enum

from pydantic import BaseModel


class PeerRole(str, Enum):
    """Role a peer declares after connecting."""
    NONE = "none"
    SENDER = "sender"
    RECEIVER = "receiver"


class Peer(BaseModel):
    """One connected endpoint."""
    id: str  # assigned by the server per connection
    name: str
    role: PeerRole = PeerRole.NONE

    def public_view(self) -> dict:
        """The shape other peers see in a peer-list."""
        return {"id": self.id, "name": self.name}
