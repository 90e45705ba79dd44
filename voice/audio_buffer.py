"""
Audio Frame Buffer — bounded per-direction FIFO for encoded audio frames.

A buffer never grows past its capacity: push() fails fast with
BufferOverflowError so the caller can apply backpressure instead of
holding an unbounded amount of audio in memory. Frames leave the buffer
only through drain(), in exactly the order they were pushed.
"""
from __future__ import annotations

from collections import deque
from typing import Iterator, Optional

import structlog

from models.schemas import AudioDirection, AudioFrame

logger = structlog.get_logger()


class BufferOverflowError(Exception):
    """Raised when a push would exceed the buffer's capacity."""

    def __init__(self, direction: AudioDirection, capacity: int):
        self.direction = direction
        self.capacity = capacity
        super().__init__(f"{direction.value} audio buffer full ({capacity} frames)")


class FrameSequenceError(Exception):
    """Raised on a frame that breaks its direction's sequence ordering."""

    def __init__(self, message: str, expected: Optional[int] = None, received: Optional[int] = None):
        self.expected = expected
        self.received = received
        super().__init__(message)


class SequenceTracker:
    """
    Enforces gap-free sequence numbers for one direction.
    The first observed frame sets the base.
    """

    def __init__(self):
        self._last: Optional[int] = None

    @property
    def last(self) -> Optional[int]:
        return self._last

    @property
    def expected(self) -> Optional[int]:
        return None if self._last is None else self._last + 1

    def advance(self, sequence: int) -> None:
        if self._last is not None and sequence != self._last + 1:
            raise FrameSequenceError(
                f"audio frame out of sequence: expected {self._last + 1}, got {sequence}",
                expected=self._last + 1,
                received=sequence,
            )
        self._last = sequence


class AudioFrameBuffer:
    """Bounded FIFO holding frames of a single direction."""

    def __init__(self, direction: AudioDirection, capacity: int = 256):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.direction = direction
        self.capacity = capacity
        self._frames: deque[AudioFrame] = deque()
        self._last_sequence: Optional[int] = None
        self.pushed_total = 0
        self.drained_total = 0

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def is_empty(self) -> bool:
        return not self._frames

    @property
    def is_full(self) -> bool:
        return len(self._frames) >= self.capacity

    def push(self, frame: AudioFrame) -> None:
        if frame.direction != self.direction:
            raise FrameSequenceError(
                f"{frame.direction.value} frame pushed to {self.direction.value} buffer"
            )
        if self._last_sequence is not None and frame.sequence <= self._last_sequence:
            raise FrameSequenceError(
                f"frame {frame.sequence} does not follow {self._last_sequence}",
                expected=self._last_sequence + 1,
                received=frame.sequence,
            )
        if self.is_full:
            logger.warning("audio_buffer_overflow",
                           direction=self.direction.value,
                           capacity=self.capacity)
            raise BufferOverflowError(self.direction, self.capacity)
        self._frames.append(frame)
        self._last_sequence = frame.sequence
        self.pushed_total += 1

    def drain(self) -> Iterator[AudioFrame]:
        """
        Yield frames in push order, removing each as it is yielded.

        Several drains may interleave (e.g. a writer suspended between
        frames while another caller discards the rest); every frame is
        still yielded exactly once.
        """
        while self._frames:
            frame = self._frames.popleft()
            self.drained_total += 1
            yield frame
