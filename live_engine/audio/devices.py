"""
Audio device contracts and their sounddevice implementations.

The scheduler and the capture pipeline only talk to the two small ABCs
below, so tests drive them with fakes and the engine can run headless.

``sounddevice`` loads PortAudio at import time and raises OSError on hosts
without it (CI, containers). The import is guarded so the rest of the
package stays importable; opening a real device on such a host raises.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

import numpy as np
import structlog

try:  # pragma: no cover - depends on host audio stack
    import sounddevice as sd
except (ImportError, OSError):  # pragma: no cover
    sd = None  # type: ignore[assignment]

logger = structlog.get_logger(__name__)


def _require_sounddevice() -> None:
    if sd is None:
        raise RuntimeError("sounddevice/PortAudio is not available on this host")


class PlaybackDevice(ABC):
    """Output device with a monotonically advancing playback clock (seconds)."""

    sample_rate: int

    @property
    @abstractmethod
    def current_time(self) -> float:
        """Seconds of audio rendered since the device was opened."""

    @abstractmethod
    def play(self, samples: np.ndarray, start_time: float) -> None:
        """Schedule float32 mono ``samples`` to start at ``start_time``."""

    @abstractmethod
    def close(self) -> None:
        """Stop output and discard anything not yet rendered."""


class CaptureDevice(ABC):
    """Input device that pushes float32 mono blocks to a callback."""

    @abstractmethod
    def start(self) -> None:
        """Begin delivering blocks."""

    @abstractmethod
    def close(self) -> None:
        """Stop delivering blocks and release the device."""


PlaybackFactory = Callable[[int], PlaybackDevice]
CaptureFactory = Callable[[int, int, Callable[[np.ndarray], None]], CaptureDevice]


class SoundDevicePlayback(PlaybackDevice):
    """
    sd.OutputStream mixing scheduled buffers onto a frame-counted clock.

    ``current_time`` is derived from frames rendered by the audio callback,
    so it advances exactly with what the hardware consumed. Buffers are
    written into the output block that overlaps their start frame; anything
    whose start has already passed is played from its remaining tail.
    """

    def __init__(self, sample_rate: int = 24000, *, blocksize: int = 1024, device: Optional[int] = None):
        _require_sounddevice()
        self.sample_rate = int(sample_rate)
        self._lock = threading.Lock()
        self._frames_rendered = 0
        # (start_frame, samples) sorted by start_frame
        self._scheduled: List[Tuple[int, np.ndarray]] = []
        self._stream = sd.OutputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            blocksize=blocksize,
            device=device,
            callback=self._callback,
        )
        self._stream.start()

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / float(self.sample_rate)

    def play(self, samples: np.ndarray, start_time: float) -> None:
        if samples.size == 0:
            return
        start_frame = int(round(start_time * self.sample_rate))
        with self._lock:
            self._scheduled.append((start_frame, samples.astype(np.float32, copy=False)))
            self._scheduled.sort(key=lambda item: item[0])

    def close(self) -> None:
        with self._lock:
            self._scheduled.clear()
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        except Exception:
            logger.debug("Playback stream stop failed", exc_info=True)
        try:
            stream.close()
        except Exception:
            logger.debug("Playback stream close failed", exc_info=True)

    def _callback(self, outdata, frames, _time_info, status) -> None:
        if status:
            logger.debug("Playback stream status", status=str(status))
        outdata.fill(0.0)
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frames
            remaining: List[Tuple[int, np.ndarray]] = []
            for start_frame, samples in self._scheduled:
                end_frame = start_frame + samples.shape[0]
                if start_frame >= block_end:
                    remaining.append((start_frame, samples))
                    continue
                if end_frame <= block_start:
                    continue
                src_from = max(0, block_start - start_frame)
                dst_from = max(0, start_frame - block_start)
                take = min(samples.shape[0] - src_from, frames - dst_from)
                outdata[dst_from:dst_from + take, 0] += samples[src_from:src_from + take]
                if end_frame > block_end:
                    remaining.append((start_frame, samples))
            self._scheduled = remaining
            self._frames_rendered = block_end


class SoundDeviceCapture(CaptureDevice):
    """sd.InputStream delivering fixed-size float32 mono blocks."""

    def __init__(
        self,
        sample_rate: int,
        block_size: int,
        on_block: Callable[[np.ndarray], None],
        *,
        device: Optional[int] = None,
    ):
        _require_sounddevice()
        self._on_block = on_block
        self._stream = sd.InputStream(
            samplerate=int(sample_rate),
            channels=1,
            dtype="float32",
            blocksize=int(block_size),
            device=device,
            callback=self._callback,
        )

    def start(self) -> None:
        if self._stream is not None:
            self._stream.start()

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        except Exception:
            logger.debug("Capture stream stop failed", exc_info=True)
        try:
            stream.close()
        except Exception:
            logger.debug("Capture stream close failed", exc_info=True)

    def _callback(self, indata, _frames, _time_info, status) -> None:
        if status:
            logger.debug("Capture stream status", status=str(status))
        self._on_block(indata[:, 0].copy())


def default_playback_factory(sample_rate: int) -> PlaybackDevice:
    return SoundDevicePlayback(sample_rate)


def default_capture_factory(
    sample_rate: int,
    block_size: int,
    on_block: Callable[[np.ndarray], None],
) -> CaptureDevice:
    return SoundDeviceCapture(sample_rate, block_size, on_block)


__all__ = [
    "PlaybackDevice",
    "CaptureDevice",
    "PlaybackFactory",
    "CaptureFactory",
    "SoundDevicePlayback",
    "SoundDeviceCapture",
    "default_playback_factory",
    "default_capture_factory",
]
