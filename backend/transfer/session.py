"""
Transfer session state machine, shared by both transfer variants.

    IDLE -> METADATA_SENT -> STREAMING -> COMPLETED
    (any non-terminal state) -> CANCELLED

COMPLETED and CANCELLED are reached through a single finalize-once latch:
whichever terminal trigger fires first wins, later ones are no-ops. After
a terminal state the owning SessionSlot is released, which is the IDLE
state for that endpoint.
"""

import logging
import time
import uuid

from transfer.errors import SessionBusyError
from transfer.models import (
    TERMINAL_STATES,
    FileMeta,
    TransferDirection,
    TransferInfo,
    TransferState,
    TransferVariant,
)

logger = logging.getLogger(__name__)


class SpeedTracker:
    """Rolling average speed calculator."""

    def __init__(self, window: float = 2.0):
        self._window = window
        self._samples: list[tuple[float, int]] = []

    def record(self, byte_count: int) -> None:
        now = time.monotonic()
        self._samples.append((now, byte_count))
        cutoff = now - self._window
        self._samples = [(t, b) for t, b in self._samples if t >= cutoff]

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        if len(self._samples) < 2:
            return 0.0
        total_bytes = sum(b for _, b in self._samples[1:])
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        return total_bytes / elapsed


class TransferSession:
    """One transfer between one sender and one receiver."""

    PROGRESS_INTERVAL = 0.2  # seconds between progress events

    def __init__(self, info: TransferInfo) -> None:
        self.info = info
        self._tracker = SpeedTracker()
        self._last_progress = 0.0

    @classmethod
    def create(
        cls,
        peer_id: str,
        meta: FileMeta,
        direction: TransferDirection,
        variant: TransferVariant,
        peer_name: str = "",
    ) -> "TransferSession":
        info = TransferInfo(
            transfer_id=str(uuid.uuid4()),
            peer_id=peer_id,
            peer_name=peer_name,
            direction=direction,
            variant=variant,
            meta=meta,
        )
        return cls(info)

    @property
    def state(self) -> TransferState:
        return self.info.state

    @property
    def peer_id(self) -> str:
        return self.info.peer_id

    @property
    def meta(self) -> FileMeta:
        return self.info.meta

    @property
    def finished(self) -> bool:
        return self.info.state in TERMINAL_STATES

    def metadata_sent(self) -> bool:
        """IDLE -> METADATA_SENT. Also used by the receiver on metadata receipt."""
        if self.info.state != TransferState.IDLE:
            return False
        self.info.state = TransferState.METADATA_SENT
        return True

    def record_chunk(self, byte_count: int) -> bool:
        """
        Account for one chunk. The first chunk after metadata moves the
        session to STREAMING. Returns False once the session is terminal.
        """
        if self.finished:
            return False
        if self.info.state in (TransferState.IDLE, TransferState.METADATA_SENT):
            self.info.state = TransferState.STREAMING
        self.info.transferred_bytes += byte_count
        self._tracker.record(byte_count)
        self.info.speed_bps = self._tracker.get_speed()
        self.info.progress_percent = (
            min(self.info.transferred_bytes / self.meta.file_size * 100, 100.0)
            if self.meta.file_size > 0
            else 100.0
        )
        return True

    def progress_due(self) -> bool:
        """True at most once per PROGRESS_INTERVAL."""
        now = time.monotonic()
        if now - self._last_progress < self.PROGRESS_INTERVAL:
            return False
        self._last_progress = now
        return True

    @property
    def size_reached(self) -> bool:
        return self.info.transferred_bytes >= self.meta.file_size

    def complete(self) -> bool:
        """Latch to COMPLETED. Returns False if already terminal."""
        if self.finished:
            return False
        self.info.state = TransferState.COMPLETED
        self.info.progress_percent = 100.0
        self.info.speed_bps = 0.0
        return True

    def cancel(self, reason: str | None = None) -> bool:
        """Latch to CANCELLED. Returns False if already terminal."""
        if self.finished:
            return False
        self.info.state = TransferState.CANCELLED
        self.info.error_message = reason
        self.info.speed_bps = 0.0
        return True


class SessionSlot:
    """
    Busy flag for one endpoint role: holds at most one live session.
    An empty slot is the IDLE state.
    """

    def __init__(self) -> None:
        self._session: TransferSession | None = None

    @property
    def current(self) -> TransferSession | None:
        if self._session is not None and self._session.finished:
            return None
        return self._session

    @property
    def busy(self) -> bool:
        return self.current is not None

    def acquire(self, session: TransferSession) -> None:
        """Occupy the slot, leaving any existing session untouched if busy."""
        if self.busy:
            raise SessionBusyError(
                f"Already busy with transfer {self._session.info.transfer_id}"
            )
        self._session = session

    def release(self, session: TransferSession) -> None:
        if self._session is session:
            self._session = None
