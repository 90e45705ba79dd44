"""
Tests for the Audio Frame Buffer and sequence tracking.
"""
import pytest

from models.schemas import AudioDirection, AudioFrame
from voice.audio_buffer import (
    AudioFrameBuffer, BufferOverflowError, FrameSequenceError, SequenceTracker,
)


def inbound(seq: int, payload: bytes = b"pcm") -> AudioFrame:
    return AudioFrame(sequence=seq, direction=AudioDirection.CLIENT_TO_MODEL, payload=payload)


class TestAudioFrameBuffer:

    def test_drain_preserves_push_order(self):
        buf = AudioFrameBuffer(AudioDirection.CLIENT_TO_MODEL, capacity=8)
        for seq in range(5):
            buf.push(inbound(seq, bytes([seq])))
        assert len(buf) == 5
        assert [f.sequence for f in buf.drain()] == [0, 1, 2, 3, 4]
        assert buf.is_empty
        assert buf.pushed_total == 5
        assert buf.drained_total == 5

    def test_overflow_rejects_push(self):
        buf = AudioFrameBuffer(AudioDirection.CLIENT_TO_MODEL, capacity=2)
        buf.push(inbound(0))
        buf.push(inbound(1))
        assert buf.is_full
        with pytest.raises(BufferOverflowError) as exc:
            buf.push(inbound(2))
        assert exc.value.capacity == 2
        assert exc.value.direction is AudioDirection.CLIENT_TO_MODEL
        assert len(buf) == 2

    def test_room_after_drain(self):
        buf = AudioFrameBuffer(AudioDirection.CLIENT_TO_MODEL, capacity=1)
        buf.push(inbound(0))
        list(buf.drain())
        buf.push(inbound(1))
        assert len(buf) == 1

    def test_rejects_wrong_direction(self):
        buf = AudioFrameBuffer(AudioDirection.MODEL_TO_CLIENT)
        with pytest.raises(FrameSequenceError):
            buf.push(inbound(0))

    def test_rejects_non_increasing_sequence(self):
        buf = AudioFrameBuffer(AudioDirection.CLIENT_TO_MODEL)
        buf.push(inbound(3))
        with pytest.raises(FrameSequenceError) as exc:
            buf.push(inbound(3))
        assert exc.value.expected == 4
        assert exc.value.received == 3

    def test_interleaved_drains_yield_each_frame_once(self):
        buf = AudioFrameBuffer(AudioDirection.CLIENT_TO_MODEL)
        for seq in range(4):
            buf.push(inbound(seq))
        writer = buf.drain()
        first = next(writer)
        discarded = list(buf.drain())
        assert first.sequence == 0
        assert [f.sequence for f in discarded] == [1, 2, 3]
        assert list(writer) == []

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            AudioFrameBuffer(AudioDirection.CLIENT_TO_MODEL, capacity=0)


class TestSequenceTracker:

    def test_first_frame_sets_base(self):
        tracker = SequenceTracker()
        assert tracker.expected is None
        tracker.advance(17)
        tracker.advance(18)
        assert tracker.last == 18
        assert tracker.expected == 19

    def test_gap_rejected(self):
        tracker = SequenceTracker()
        tracker.advance(0)
        with pytest.raises(FrameSequenceError) as exc:
            tracker.advance(2)
        assert exc.value.expected == 1
        assert tracker.last == 0

    def test_reorder_rejected(self):
        tracker = SequenceTracker()
        tracker.advance(5)
        tracker.advance(6)
        with pytest.raises(FrameSequenceError):
            tracker.advance(5)
