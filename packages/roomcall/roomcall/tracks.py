"""Media tracks for aiortc: generated sources and a mute-able wrapper.

aiortc calls recv() roughly every frame period. The generated tracks pace
themselves against a monotonic clock the same way a capture device would.
"""

import asyncio
import time
from fractions import Fraction

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame

SAMPLE_RATE = 48000
FRAME_SAMPLES = 960  # 20ms at 48kHz
PTIME = FRAME_SAMPLES / SAMPLE_RATE

VIDEO_CLOCK_RATE = 90000
VIDEO_FPS = 30
VIDEO_PTIME = 1 / VIDEO_FPS


class _PacedTrack(MediaStreamTrack):
    """Sleeps until the next frame is due."""

    _period = PTIME

    def __init__(self):
        super().__init__()
        self._start_time = None
        self._frame_count = 0

    async def _next_timestamp(self) -> int:
        if self.readyState != "live":
            raise MediaStreamError
        if self._start_time is None:
            self._start_time = time.monotonic()

        target_time = self._start_time + self._frame_count * self._period
        now = time.monotonic()
        if target_time > now:
            await asyncio.sleep(target_time - now)

        index = self._frame_count
        self._frame_count += 1
        return index


class ToneAudioTrack(_PacedTrack):
    """Mono s16 audio at 48kHz: a sine tone, or silence when frequency is 0."""

    kind = "audio"

    def __init__(self, frequency: float = 0.0, amplitude: int = 8000):
        super().__init__()
        self.frequency = frequency
        self.amplitude = amplitude

    async def recv(self) -> AudioFrame:
        index = await self._next_timestamp()

        if self.frequency:
            t = (np.arange(FRAME_SAMPLES) + index * FRAME_SAMPLES) / SAMPLE_RATE
            samples = (self.amplitude * np.sin(2 * np.pi * self.frequency * t)).astype(np.int16)
        else:
            samples = np.zeros(FRAME_SAMPLES, dtype=np.int16)

        frame = AudioFrame.from_ndarray(samples.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = SAMPLE_RATE
        frame.pts = index * FRAME_SAMPLES
        frame.time_base = Fraction(1, SAMPLE_RATE)
        return frame


class FlatVideoTrack(_PacedTrack):
    """Solid-color rgb24 video at 30fps."""

    kind = "video"
    _period = VIDEO_PTIME

    def __init__(self, width: int = 640, height: int = 480, color=(32, 32, 32)):
        super().__init__()
        self.width = width
        self.height = height
        self._image = np.empty((height, width, 3), dtype=np.uint8)
        self._image[:, :] = color

    async def recv(self) -> VideoFrame:
        index = await self._next_timestamp()
        frame = VideoFrame.from_ndarray(self._image, format="rgb24")
        frame.pts = int(index * VIDEO_CLOCK_RATE * VIDEO_PTIME)
        frame.time_base = Fraction(1, VIDEO_CLOCK_RATE)
        return frame


def blank_frame(frame):
    """Silent (audio) or black (video) frame with the same timing as `frame`."""
    if isinstance(frame, AudioFrame):
        zeros = np.zeros_like(frame.to_ndarray())
        blank = AudioFrame.from_ndarray(zeros, format=frame.format.name, layout=frame.layout.name)
        blank.sample_rate = frame.sample_rate
    else:
        zeros = np.zeros((frame.height, frame.width, 3), dtype=np.uint8)
        blank = VideoFrame.from_ndarray(zeros, format="rgb24")
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class SwitchableTrack(MediaStreamTrack):
    """Relays a source track; while disabled it sends silence/black instead.

    Muting this way keeps the sender attached, so no renegotiation happens.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return blank_frame(frame)

    def stop(self):
        super().stop()
        self.source.stop()
