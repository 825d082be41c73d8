"""
Receiver assembler.

Accumulates chunks in arrival order (which is file order for both
variants) and produces the reconstructed file exactly once, either when
the declared size is reached or when the sender signals completion.
"""

import logging
from dataclasses import dataclass

from transfer.models import FileMeta

logger = logging.getLogger(__name__)


@dataclass
class AssembledFile:
    """Reconstructed file handed to storage or presentation."""
    meta: FileMeta
    data: bytes

    @property
    def size_mismatch(self) -> bool:
        return len(self.data) != self.meta.file_size


class ReceiverAssembler:
    """Chunk buffer for one incoming file."""

    def __init__(self) -> None:
        self._meta: FileMeta | None = None
        self._chunks: list[bytes] = []
        self._received = 0
        self._finalized = False

    @property
    def active(self) -> bool:
        return self._meta is not None and not self._finalized

    @property
    def received(self) -> int:
        return self._received

    def begin(self, meta: FileMeta) -> None:
        self._meta = meta
        self._chunks = []
        self._received = 0
        self._finalized = False

    def add_chunk(self, chunk: bytes) -> AssembledFile | None:
        """Buffer a chunk. Returns the file if the declared size is reached."""
        if not self.active:
            return None
        self._chunks.append(bytes(chunk))
        self._received += len(chunk)
        if self._received >= self._meta.file_size:
            return self._finalize()
        return None

    def finish(self) -> AssembledFile | None:
        """Explicit completion signal; finalizes even if bytes are missing."""
        if not self.active:
            return None
        return self._finalize()

    def discard(self) -> None:
        """Drop any partial buffer."""
        self._meta = None
        self._chunks = []
        self._received = 0
        self._finalized = False

    def _finalize(self) -> AssembledFile:
        self._finalized = True
        assembled = AssembledFile(meta=self._meta, data=b"".join(self._chunks))
        self._chunks = []
        if assembled.size_mismatch:
            logger.warning(
                f"Assembled '{assembled.meta.file_name}' is {len(assembled.data)} bytes, "
                f"declared {assembled.meta.file_size}"
            )
        return assembled
