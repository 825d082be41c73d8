"""Pydantic models for file transfer."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from config import DEFAULT_CONTENT_TYPE


class TransferState(str, Enum):
    """Phases of a single transfer session."""
    IDLE = "idle"
    METADATA_SENT = "metadata_sent"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (TransferState.COMPLETED, TransferState.CANCELLED)


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class TransferVariant(str, Enum):
    DIRECT = "direct"  # bytes over a peer-to-peer data channel
    RELAYED = "relayed"  # bytes through the signaling server


class FileMeta(BaseModel):
    """Metadata announced before any file data."""
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName")
    file_size: int = Field(alias="fileSize", ge=0)
    file_type: str = Field(alias="fileType", default=DEFAULT_CONTENT_TYPE)

    def wire(self) -> dict:
        """Camel-cased form used on the control and data channels."""
        return self.model_dump(by_alias=True)


class TransferInfo(BaseModel):
    """Full state of a single file transfer, exposed to the UI."""
    transfer_id: str
    peer_id: str
    peer_name: str = ""
    direction: TransferDirection
    variant: TransferVariant
    meta: FileMeta
    transferred_bytes: int = 0
    state: TransferState = TransferState.IDLE
    speed_bps: float = 0.0
    progress_percent: float = 0.0
    error_message: str | None = None
