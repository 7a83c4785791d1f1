"""
AudioEgressScheduler - gapless scheduling of model audio.

Inbound audio arrives either base64-embedded in serverContent frames (the
engine decodes it) or as raw binary PCM frames. Each buffer is placed on a
single cursor:

    start = max(device.current_time + lookahead, next_play_time)
    next_play_time = start + duration

so consecutive buffers play back-to-back in arrival order regardless of
network jitter. A late buffer adds latency, it never overlaps or reorders.

Some platforms degrade an output stream that has been idle for a long time.
After ``silence_reset_sec`` without audio the scheduler closes the device
and opens a fresh one. Buffers still queued on the old device are dropped.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
import structlog
from prometheus_client import Counter

from .devices import PlaybackDevice, PlaybackFactory, default_playback_factory
from .resampler import pad_to_sample_boundary, pcm16_to_float32

logger = structlog.get_logger(__name__)

_EGRESS_BUFFERS_TOTAL = Counter(
    "live_engine_egress_buffers_total",
    "Audio buffers scheduled for playback",
)
_EGRESS_DROPPED_TOTAL = Counter(
    "live_engine_egress_dropped_payloads_total",
    "Inbound audio payloads dropped before scheduling",
    labelnames=("reason",),
)
_EGRESS_DEVICE_RESETS_TOTAL = Counter(
    "live_engine_egress_device_resets_total",
    "Playback device resets after prolonged silence",
)


@dataclass
class ScheduledBuffer:
    samples: np.ndarray
    start_time: float
    duration: float

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


class AudioEgressScheduler:
    def __init__(
        self,
        *,
        sample_rate: int = 24000,
        lookahead_sec: float = 0.01,
        silence_reset_sec: float = 30.0,
        min_payload_bytes: int = 100,
        device_factory: Optional[PlaybackFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sample_rate = int(sample_rate)
        self.lookahead_sec = max(0.0, float(lookahead_sec))
        self.silence_reset_sec = float(silence_reset_sec)
        self.min_payload_bytes = max(0, int(min_payload_bytes))
        self._device_factory = device_factory or default_playback_factory
        self._clock = clock
        self._device: Optional[PlaybackDevice] = None
        self.next_play_time: float = 0.0
        self.last_audio_at: Optional[float] = None
        self.played_buffers: int = 0
        self._pending: List[ScheduledBuffer] = []

    @property
    def device(self) -> Optional[PlaybackDevice]:
        return self._device

    @property
    def pending(self) -> List[ScheduledBuffer]:
        """Buffers scheduled but not yet finished on the current device."""
        if self._device is not None:
            now = self._device.current_time
            self._pending = [b for b in self._pending if b.end_time > now]
        return list(self._pending)

    def submit_pcm(self, data: bytes) -> Optional[ScheduledBuffer]:
        """
        Schedule a PCM16 payload (decoded inline audio or a binary frame).

        Payloads shorter than ``min_payload_bytes`` are treated as noise and
        dropped before padding; odd lengths are zero-padded to whole samples.
        """
        if len(data) < self.min_payload_bytes:
            _EGRESS_DROPPED_TOTAL.labels("too_short").inc()
            return None
        samples = pcm16_to_float32(pad_to_sample_boundary(data))
        return self.schedule(samples)

    def schedule(self, samples: np.ndarray) -> Optional[ScheduledBuffer]:
        if samples.size == 0:
            return None
        self.check_health()
        device = self._ensure_device()
        duration = samples.shape[0] / float(self.sample_rate)
        start_time = max(device.current_time + self.lookahead_sec, self.next_play_time)
        device.play(samples, start_time)
        self.next_play_time = start_time + duration
        self.last_audio_at = self._clock()
        self.played_buffers += 1
        buffer = ScheduledBuffer(samples=samples, start_time=start_time, duration=duration)
        self._pending.append(buffer)
        _EGRESS_BUFFERS_TOTAL.inc()
        return buffer

    def check_health(self) -> bool:
        """Reset the device after prolonged silence. Returns True if it reset."""
        if self.last_audio_at is None or self._device is None:
            return False
        silent_for = self._clock() - self.last_audio_at
        if silent_for <= self.silence_reset_sec:
            return False
        logger.info(
            "Resetting playback device after silence",
            silent_for_sec=round(silent_for, 1),
            dropped_buffers=len(self.pending),
        )
        self.reset()
        _EGRESS_DEVICE_RESETS_TOTAL.inc()
        return True

    def reset(self) -> None:
        """Recreate the playback device, discarding anything still queued."""
        self._close_device()
        self._device = self._device_factory(self.sample_rate)
        self.next_play_time = 0.0
        self.played_buffers = 0
        self.last_audio_at = None

    def close(self) -> None:
        self._close_device()
        self.next_play_time = 0.0
        self.played_buffers = 0
        self.last_audio_at = None

    def _ensure_device(self) -> PlaybackDevice:
        if self._device is None:
            self._device = self._device_factory(self.sample_rate)
            self.next_play_time = 0.0
        return self._device

    def _close_device(self) -> None:
        device, self._device = self._device, None
        self._pending.clear()
        if device is None:
            return
        try:
            device.close()
        except Exception:
            logger.debug("Playback device close failed", exc_info=True)


__all__ = ["AudioEgressScheduler", "ScheduledBuffer"]
