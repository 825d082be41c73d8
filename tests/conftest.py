"""Shared fakes and helpers for the Dropbridge test suite."""

import itertools

import pytest

from signaling.protocol import Ack, Message, decode


class FakeSignaling:
    """In-memory stand-in for SignalingClient."""

    def __init__(self, request_ack=Ack.OK, chunk_acks=None):
        self.handlers = {}
        self.emitted = []
        self.requests = []
        self.chunks = []
        self.request_ack = request_ack
        self._chunk_acks = iter(chunk_acks) if chunk_acks is not None else itertools.repeat(Ack.OK)

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    async def emit(self, event, data=None):
        self.emitted.append((event, data))

    async def request(self, event, data=None, timeout=None):
        self.requests.append((event, data))
        if isinstance(self.request_ack, BaseException):
            raise self.request_ack
        return self.request_ack

    async def request_binary(self, event, data, payload, timeout=None):
        self.chunks.append((data, payload))
        ack = next(self._chunk_acks)
        if isinstance(ack, BaseException):
            raise ack
        return ack

    async def fire(self, event, data=None, payload=None):
        message = Message(event=event, data=data, payload=payload)
        for handler in self.handlers.get(event, []):
            await handler(message)

    def emitted_events(self):
        return [event for event, _ in self.emitted]


class FakeChannel:
    """Mimics the parts of aiortc's RTCDataChannel the senders use."""

    def __init__(self):
        self.readyState = "open"
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.sent = []
        self.max_buffered_before_send = 0
        self._listeners = {}

    def on(self, event, f=None):
        if f is None:
            def decorator(func):
                self._listeners.setdefault(event, []).append(func)
                return func
            return decorator
        self._listeners.setdefault(event, []).append(f)
        return f

    def remove_listener(self, event, f):
        if f in self._listeners.get(event, []):
            self._listeners[event].remove(f)

    def emit(self, event, *args):
        for f in list(self._listeners.get(event, [])):
            f(*args)

    def send(self, data):
        self.max_buffered_before_send = max(self.max_buffered_before_send, self.bufferedAmount)
        self.sent.append(data)
        if isinstance(data, bytes):
            self.bufferedAmount += len(data)

    def drain(self, to: int = 0):
        previous = self.bufferedAmount
        self.bufferedAmount = min(self.bufferedAmount, to)
        if previous > self.bufferedAmountLowThreshold >= self.bufferedAmount:
            self.emit("bufferedamountlow")


class EventRecorder:
    """Collects (event_type, data) pairs from emit callbacks."""

    def __init__(self):
        self.events = []

    async def __call__(self, event_type, data):
        self.events.append((event_type, data))

    def states(self):
        return [d["state"] for e, d in self.events if e == "transfer_state"]


class FileSink:
    """Collects files handed over by a TransferReceiver."""

    def __init__(self):
        self.files = []

    async def __call__(self, assembled, info):
        self.files.append((assembled, info))


def receive_message(ws) -> Message:
    """Read one frame from a TestClient websocket and decode it."""
    frame = ws.receive()
    if frame.get("bytes") is not None:
        return decode(frame["bytes"])
    return decode(frame["text"])


def wait_for(ws, event: str, predicate=None) -> Message:
    """Read frames until one with ``event`` (and matching ``predicate``) arrives."""
    while True:
        message = receive_message(ws)
        if message.event == event and (predicate is None or predicate(message)):
            return message


def wait_for_ack(ws, ack_id: int) -> str:
    return wait_for(ws, "ack", lambda m: m.id == ack_id).data


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def sink():
    return FileSink()
