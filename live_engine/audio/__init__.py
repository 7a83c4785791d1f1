"""Audio capture, playback scheduling and PCM helpers."""

from .capture import AudioIngestPipeline
from .devices import (
    CaptureDevice,
    CaptureFactory,
    PlaybackDevice,
    PlaybackFactory,
    default_capture_factory,
    default_playback_factory,
)
from .playback import AudioEgressScheduler, ScheduledBuffer
from .resampler import (
    decode_pcm_base64,
    encode_pcm_base64,
    float32_to_pcm16,
    pad_to_sample_boundary,
    pcm16_to_float32,
    resample_audio,
)

__all__ = [
    "AudioIngestPipeline",
    "AudioEgressScheduler",
    "ScheduledBuffer",
    "CaptureDevice",
    "CaptureFactory",
    "PlaybackDevice",
    "PlaybackFactory",
    "default_capture_factory",
    "default_playback_factory",
    "decode_pcm_base64",
    "encode_pcm_base64",
    "float32_to_pcm16",
    "pad_to_sample_boundary",
    "pcm16_to_float32",
    "resample_audio",
]
