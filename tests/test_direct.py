"""Tests for the direct (data channel) transfer variant."""

import asyncio
import io
import json

import pytest

from client.direct import CANCEL, DONE, META, DirectReceiver, DirectSender, control_message
from client.receiver import TransferReceiver
from transfer.errors import SessionBusyError
from transfer.models import FileMeta, TransferState, TransferVariant
from transfer.session import SessionSlot

from conftest import FakeChannel

HIGH = 64
LOW = 16
CHUNK = 16


def make_meta(size, name="notes.txt"):
    return FileMeta(file_name=name, file_size=size, file_type="text/plain")


def make_sender(slot=None, emit=None, drain_timeout=2.0, high=HIGH):
    kwargs = {"emit": emit} if emit else {}
    return DirectSender(
        slot or SessionSlot(),
        chunk_size=CHUNK,
        high_water=high,
        low_water=LOW,
        drain_timeout=drain_timeout,
        **kwargs,
    )


def opener(channel):
    async def open_channel():
        return channel
    return open_channel


class TestDirectSender:
    @pytest.mark.asyncio
    async def test_pauses_above_high_water_and_resumes(self, recorder):
        data = bytes(range(256))
        channel = FakeChannel()
        sender = make_sender(emit=recorder)
        pauses = 0

        task = asyncio.create_task(
            sender.send(opener(channel), io.BytesIO(data), make_meta(len(data)), "r1", "Calm-Orb-02")
        )
        while not task.done():
            await asyncio.sleep(0.001)
            if channel.bufferedAmount > HIGH:
                # Sender must be parked here; release it at the low-water mark
                pauses += 1
                channel.drain(LOW)
            elif channel.bufferedAmountLowThreshold == 0 and channel.bufferedAmount:
                channel.drain(0)
        info = task.result()

        assert info.state == TransferState.COMPLETED
        assert pauses >= 1
        assert channel.max_buffered_before_send <= HIGH

        assert json.loads(channel.sent[0]) == {"type": META, **make_meta(len(data)).wire()}
        assert json.loads(channel.sent[-1]) == {"type": DONE}
        assert b"".join(channel.sent[1:-1]) == data
        assert all(len(c) == CHUNK for c in channel.sent[1:-1])
        assert recorder.states()[-1] == TransferState.COMPLETED

    @pytest.mark.asyncio
    async def test_undrained_channel_times_out(self):
        channel = FakeChannel()
        slot = SessionSlot()
        sender = make_sender(slot=slot, drain_timeout=0.05, high=8)

        info = await sender.send(opener(channel), io.BytesIO(b"x" * 64), make_meta(64), "r1")

        assert info.state == TransferState.CANCELLED
        assert "did not drain" in info.error_message
        assert not slot.busy

    @pytest.mark.asyncio
    async def test_receiver_cancel_while_paused(self, recorder):
        channel = FakeChannel()
        sender = make_sender(emit=recorder, drain_timeout=5.0, high=8)

        task = asyncio.create_task(
            sender.send(opener(channel), io.BytesIO(b"x" * 64), make_meta(64), "r1")
        )
        while channel.bufferedAmount <= 8:
            await asyncio.sleep(0.001)
        channel.emit("message", control_message(CANCEL))
        info = await asyncio.wait_for(task, timeout=1.0)
        await asyncio.sleep(0)

        assert info.state == TransferState.CANCELLED
        assert info.error_message == "Receiver cancelled the transfer"
        assert recorder.states().count(TransferState.CANCELLED) == 1

    @pytest.mark.asyncio
    async def test_channel_close_after_drain_counts_as_complete(self):
        channel = FakeChannel()
        sender = make_sender()

        task = asyncio.create_task(
            sender.send(opener(channel), io.BytesIO(b"abcd"), make_meta(4), "r1")
        )
        while not (channel.sent and channel.sent[-1] == control_message(DONE)):
            await asyncio.sleep(0.001)
        # Queue empties without the low-water event, then the receiver hangs up
        channel.bufferedAmount = 0
        channel.emit("close")
        info = await asyncio.wait_for(task, timeout=1.0)
        assert info.state == TransferState.COMPLETED

    @pytest.mark.asyncio
    async def test_channel_close_with_bytes_queued_cancels(self, recorder):
        channel = FakeChannel()
        sender = make_sender(emit=recorder, high=8192)

        task = asyncio.create_task(
            sender.send(opener(channel), io.BytesIO(b"x" * 4000), make_meta(4000), "r1")
        )
        while not (channel.sent and channel.sent[-1] == control_message(DONE)):
            await asyncio.sleep(0.001)
        assert channel.bufferedAmount == 4000
        channel.emit("close")
        info = await asyncio.wait_for(task, timeout=1.0)
        await asyncio.sleep(0)

        assert info.state == TransferState.CANCELLED
        assert info.error_message == "Data channel closed"
        assert TransferState.COMPLETED not in recorder.states()

    @pytest.mark.asyncio
    async def test_failed_open_cancels(self):
        async def broken_open():
            raise ConnectionError("negotiation failed")

        slot = SessionSlot()
        info = await make_sender(slot=slot).send(broken_open, io.BytesIO(b"a"), make_meta(1), "r1")
        assert info.state == TransferState.CANCELLED
        assert not slot.busy

    @pytest.mark.asyncio
    async def test_busy_slot_rejects_second_send(self):
        slot = SessionSlot()
        gate = asyncio.Event()
        channel = FakeChannel()

        async def slow_open():
            await gate.wait()
            return channel

        sender = make_sender(slot=slot)
        first = asyncio.create_task(sender.send(slow_open, io.BytesIO(b"ab"), make_meta(2), "r1"))
        while not slot.busy:
            await asyncio.sleep(0)

        with pytest.raises(SessionBusyError):
            await sender.send(opener(FakeChannel()), io.BytesIO(b"c"), make_meta(1), "r2")
        assert slot.current.peer_id == "r1"

        await sender.cancel()
        gate.set()
        info = await first
        assert info.state == TransferState.CANCELLED


class TestDirectReceiver:
    def _receiver(self, recorder, sink, slot=None):
        return DirectReceiver(
            TransferReceiver(slot or SessionSlot(), TransferVariant.DIRECT, emit=recorder, on_file=sink)
        )

    @pytest.mark.asyncio
    async def test_reassembles_in_order(self, recorder, sink):
        channel = FakeChannel()
        receiver = self._receiver(recorder, sink)
        task = receiver.attach(channel, "s1", "Swift-Falcon-01")

        chunks = [b"a" * 16, b"b" * 16, b"c" * 8]
        channel.emit("message", control_message(META, **make_meta(40).wire()))
        for chunk in chunks:
            channel.emit("message", chunk)
        channel.emit("message", control_message(DONE))
        channel.emit("close")
        await asyncio.wait_for(task, timeout=1.0)

        assembled, info = sink.files[0]
        assert assembled.data == b"".join(chunks)
        assert info.state == TransferState.COMPLETED
        assert info.variant == TransferVariant.DIRECT
        assert info.peer_name == "Swift-Falcon-01"

    @pytest.mark.asyncio
    async def test_close_mid_transfer_cancels(self, recorder, sink):
        channel = FakeChannel()
        slot = SessionSlot()
        receiver = self._receiver(recorder, sink, slot)
        task = receiver.attach(channel, "s1")

        channel.emit("message", control_message(META, **make_meta(40).wire()))
        channel.emit("message", b"a" * 16)
        channel.emit("close")
        await asyncio.wait_for(task, timeout=1.0)

        assert sink.files == []
        assert not slot.busy
        assert recorder.states()[-1] == TransferState.CANCELLED

    @pytest.mark.asyncio
    async def test_sender_cancel_message(self, recorder, sink):
        receiver = self._receiver(recorder, sink)
        await receiver.handle_message("s1", "", control_message(META, **make_meta(10).wire()))
        await receiver.handle_message("s1", "", control_message(CANCEL))
        assert recorder.states()[-1] == TransferState.CANCELLED

    @pytest.mark.asyncio
    async def test_bad_control_messages_are_ignored(self, recorder, sink):
        receiver = self._receiver(recorder, sink)
        await receiver.handle_message("s1", "", "not json")
        await receiver.handle_message("s1", "", json.dumps({"type": "meta", "fileSize": -5}))
        await receiver.handle_message("s1", "", json.dumps({"type": "mystery"}))
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_user_cancel_tells_sender(self, recorder, sink):
        channel = FakeChannel()
        receiver = self._receiver(recorder, sink)
        task = receiver.attach(channel, "s1")
        channel.emit("message", control_message(META, **make_meta(10).wire()))
        while receiver._receiver.session is None:
            await asyncio.sleep(0)

        assert await receiver.cancel()
        assert json.loads(channel.sent[-1]) == {"type": CANCEL}
        channel.emit("close")
        await asyncio.wait_for(task, timeout=1.0)
