"""
AudioIngestPipeline - microphone capture to realtime-input frames.

The capture device runs on its own audio thread and hands float32 blocks
to the event loop with ``call_soon_threadsafe``. A sender task converts
each block to PCM16 at the wire rate and passes it to the sink (the engine),
but only while the session reports ready. Capture never waits on playback.

The device and the sender task are torn down exactly once on every exit
path: explicit ``stop()``, leaving an ``async with`` block, a sink error, or
the engine disconnecting.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Callable, Optional

import numpy as np
import structlog

from .devices import CaptureDevice, CaptureFactory, default_capture_factory
from .resampler import float32_to_pcm16, resample_audio

logger = structlog.get_logger(__name__)

_QUEUE_MAX_BLOCKS = 64


class AudioIngestPipeline:
    def __init__(
        self,
        sink: Callable[[bytes], Awaitable[None]],
        is_ready: Callable[[], bool],
        *,
        capture_sample_rate: int = 16000,
        wire_sample_rate: int = 16000,
        block_size: int = 4096,
        device_factory: Optional[CaptureFactory] = None,
    ):
        self._sink = sink
        self._is_ready = is_ready
        self.capture_sample_rate = int(capture_sample_rate)
        self.wire_sample_rate = int(wire_sample_rate)
        self.block_size = int(block_size)
        self._device_factory = device_factory or default_capture_factory
        self._device: Optional[CaptureDevice] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._sender_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._resample_state: Optional[tuple] = None
        self._running = False
        self._teardown_done = False
        self.chunks_sent = 0
        self.chunks_dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=_QUEUE_MAX_BLOCKS)
        self._resample_state = None
        self._teardown_done = False
        self._device = self._device_factory(self.capture_sample_rate, self.block_size, self._on_block)
        try:
            self._device.start()
        except Exception:
            await self._teardown()
            raise
        self._running = True
        self._sender_task = asyncio.create_task(self._send_loop(), name="live-audio-ingest")
        logger.info(
            "Microphone capture started",
            capture_rate=self.capture_sample_rate,
            wire_rate=self.wire_sample_rate,
            block_size=self.block_size,
        )

    async def stop(self) -> None:
        await self._teardown()

    async def __aenter__(self) -> "AudioIngestPipeline":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _on_block(self, block: np.ndarray) -> None:
        # Audio thread: never touch the queue directly.
        loop = self._loop
        if loop is None or not self._running or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._enqueue, block)
        except RuntimeError:
            # Loop closed between the check and the call
            pass

    def _enqueue(self, block: np.ndarray) -> None:
        if self._queue is None or not self._running:
            return
        try:
            self._queue.put_nowait(block)
        except asyncio.QueueFull:
            self.chunks_dropped += 1
            logger.debug("Dropping capture block: queue full", dropped=self.chunks_dropped)

    def encode_block(self, block: np.ndarray) -> bytes:
        """Float32 block at the capture rate -> PCM16 bytes at the wire rate."""
        pcm = float32_to_pcm16(block)
        if self.capture_sample_rate != self.wire_sample_rate:
            pcm, self._resample_state = resample_audio(
                pcm,
                self.capture_sample_rate,
                self.wire_sample_rate,
                state=self._resample_state,
            )
        return pcm

    async def _send_loop(self) -> None:
        queue = self._queue
        if queue is None:
            return
        try:
            while True:
                block = await queue.get()
                if not self._is_ready():
                    continue
                pcm = self.encode_block(block)
                if not pcm:
                    continue
                await self._sink(pcm)
                self.chunks_sent += 1
        except asyncio.CancelledError:
            return
        except Exception:
            logger.error("Audio ingest stopped after sink error", exc_info=True)
            # Separate task: teardown awaits this one.
            self._teardown_task = asyncio.create_task(self._teardown(), name="live-audio-ingest-teardown")

    async def _teardown(self) -> None:
        if self._teardown_done:
            return
        self._teardown_done = True
        self._running = False
        device, self._device = self._device, None
        if device is not None:
            try:
                device.close()
            except Exception:
                logger.warning("Capture device close failed", exc_info=True)
        task, self._sender_task = self._sender_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._queue = None
        self._loop = None
        logger.info("Microphone capture stopped", chunks_sent=self.chunks_sent)


__all__ = ["AudioIngestPipeline"]
