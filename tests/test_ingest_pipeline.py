import asyncio
import struct

import numpy as np
import pytest

from live_engine.audio import AudioIngestPipeline, CaptureDevice


class _FakeCapture(CaptureDevice):
    def __init__(self, sample_rate, block_size, on_block):
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.on_block = on_block
        self.started = False
        self.close_calls = 0

    def start(self):
        self.started = True

    def close(self):
        self.close_calls += 1


class _CaptureFactory:
    def __init__(self):
        self.devices = []

    def __call__(self, sample_rate, block_size, on_block):
        device = _FakeCapture(sample_rate, block_size, on_block)
        self.devices.append(device)
        return device


class _Sink:
    def __init__(self, fail=False):
        self.chunks = []
        self.fail = fail
        self.received = asyncio.Event()

    async def __call__(self, pcm):
        if self.fail:
            raise RuntimeError("socket gone")
        self.chunks.append(pcm)
        self.received.set()


async def _drain(iterations=5):
    for _ in range(iterations):
        await asyncio.sleep(0)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_blocks_are_converted_and_sent_when_ready():
    factory = _CaptureFactory()
    sink = _Sink()
    pipeline = AudioIngestPipeline(sink, lambda: True, block_size=4, device_factory=factory)

    await pipeline.start()
    device = factory.devices[0]
    assert device.started is True
    assert device.block_size == 4

    device.on_block(np.array([0.0, 0.5, -0.5, 1.0], dtype=np.float32))
    await asyncio.wait_for(sink.received.wait(), timeout=1.0)
    await pipeline.stop()

    assert sink.chunks == [struct.pack("<4h", 0, int(0.5 * 0x7FFF), int(-0.5 * 0x8000), 0x7FFF)]
    assert pipeline.chunks_sent == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_nothing_is_emitted_while_not_ready():
    factory = _CaptureFactory()
    sink = _Sink()
    ready = {"value": False}
    pipeline = AudioIngestPipeline(sink, lambda: ready["value"], device_factory=factory)

    await pipeline.start()
    factory.devices[0].on_block(np.zeros(16, dtype=np.float32))
    await _drain()
    assert sink.chunks == []

    ready["value"] = True
    factory.devices[0].on_block(np.zeros(16, dtype=np.float32))
    await asyncio.wait_for(sink.received.wait(), timeout=1.0)
    await pipeline.stop()

    assert len(sink.chunks) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_capture_rate_is_resampled_to_wire_rate():
    factory = _CaptureFactory()
    sink = _Sink()
    pipeline = AudioIngestPipeline(
        sink,
        lambda: True,
        capture_sample_rate=48000,
        wire_sample_rate=16000,
        block_size=480,
        device_factory=factory,
    )

    await pipeline.start()
    assert factory.devices[0].sample_rate == 48000
    factory.devices[0].on_block(np.zeros(480, dtype=np.float32))
    await asyncio.wait_for(sink.received.wait(), timeout=1.0)
    await pipeline.stop()

    assert len(sink.chunks[0]) == 160 * 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stop_is_idempotent_and_closes_device_once():
    factory = _CaptureFactory()
    pipeline = AudioIngestPipeline(_Sink(), lambda: True, device_factory=factory)

    await pipeline.start()
    await pipeline.stop()
    await pipeline.stop()

    assert factory.devices[0].close_calls == 1
    assert pipeline.running is False


@pytest.mark.asyncio
@pytest.mark.unit
async def test_context_manager_tears_down_on_error():
    factory = _CaptureFactory()

    with pytest.raises(ValueError):
        async with AudioIngestPipeline(_Sink(), lambda: True, device_factory=factory) as pipeline:
            assert pipeline.running is True
            raise ValueError("boom")

    assert factory.devices[0].close_calls == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_sink_failure_tears_down_pipeline():
    factory = _CaptureFactory()
    pipeline = AudioIngestPipeline(_Sink(fail=True), lambda: True, device_factory=factory)

    await pipeline.start()
    factory.devices[0].on_block(np.zeros(16, dtype=np.float32))
    for _ in range(20):
        await asyncio.sleep(0)
        if factory.devices[0].close_calls:
            break

    assert factory.devices[0].close_calls == 1
    assert pipeline.running is False
    await pipeline.stop()
    assert factory.devices[0].close_calls == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_blocks_after_stop_are_ignored():
    factory = _CaptureFactory()
    sink = _Sink()
    pipeline = AudioIngestPipeline(sink, lambda: True, device_factory=factory)

    await pipeline.start()
    await pipeline.stop()
    factory.devices[0].on_block(np.zeros(16, dtype=np.float32))
    await _drain()

    assert sink.chunks == []
