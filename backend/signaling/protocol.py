"""
Control-channel wire format.

Text frames carry a JSON envelope ``{"event", "data", "id"}``. Binary
frames carry file chunks: a 4-byte big-endian header length, a JSON
envelope of that length, then the raw chunk bytes. An envelope with an
``id`` asks for an acknowledgement, answered with an ``ack`` event
carrying the same id.
"""

import json
import struct
from typing import Any

from pydantic import BaseModel

HEADER_FORMAT = "!I"  # 4-byte envelope length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)


class Event:
    """Event names used on the control channel."""
    SELF_IDENTITY = "self-identity"
    SET_ROLE = "set-role"
    ROLE_CONFIRMED = "role-confirmed"
    PEER_LIST = "peer-list"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    TRANSFER_REQUEST = "transfer-request"
    TRANSFER_INCOMING = "transfer-incoming"
    FILE_CHUNK = "file-chunk"
    TRANSFER_DONE = "transfer-done"
    TRANSFER_CANCEL = "transfer-cancel"
    ACK = "ack"


class Ack:
    """Acknowledgement results."""
    OK = "ok"
    NO_PEER = "no-peer"
    NOT_RECEIVER = "not-receiver"
    BUSY = "busy"


class ProtocolError(ValueError):
    """Raised for frames that cannot be decoded."""


class Message(BaseModel):
    """One decoded control-channel frame."""
    event: str
    data: Any = None
    id: int | None = None
    payload: bytes | None = None


def encode_text(event: str, data: Any = None, ack_id: int | None = None) -> str:
    envelope: dict[str, Any] = {"event": event, "data": data}
    if ack_id is not None:
        envelope["id"] = ack_id
    return json.dumps(envelope)


def encode_binary(
    event: str, data: Any, payload: bytes, ack_id: int | None = None
) -> bytes:
    envelope: dict[str, Any] = {"event": event, "data": data}
    if ack_id is not None:
        envelope["id"] = ack_id
    header = json.dumps(envelope).encode("utf-8")
    return struct.pack(HEADER_FORMAT, len(header)) + header + payload


def encode_ack(ack_id: int, result: str) -> str:
    return encode_text(Event.ACK, result, ack_id)


def decode(frame: str | bytes) -> Message:
    """Decode a text or binary frame into a Message."""
    if isinstance(frame, (bytes, bytearray, memoryview)):
        frame = bytes(frame)
        if len(frame) < HEADER_SIZE:
            raise ProtocolError("Binary frame shorter than its header")
        (length,) = struct.unpack(HEADER_FORMAT, frame[:HEADER_SIZE])
        end = HEADER_SIZE + length
        if end > len(frame):
            raise ProtocolError("Binary frame header length exceeds frame")
        envelope = _load(frame[HEADER_SIZE:end])
        payload = frame[end:]
    else:
        envelope = _load(frame)
        payload = None

    event = envelope.get("event")
    if not isinstance(event, str):
        raise ProtocolError("Envelope without an event name")
    ack_id = envelope.get("id")
    if ack_id is not None and not isinstance(ack_id, int):
        raise ProtocolError(f"Invalid ack id {ack_id!r}")
    return Message(event=event, data=envelope.get("data"), id=ack_id, payload=payload)


def _load(raw: str | bytes) -> dict:
    try:
        envelope = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON envelope: {e}") from e
    if not isinstance(envelope, dict):
        raise ProtocolError("Envelope is not an object")
    return envelope
