"""
PCM conversion and resampling helpers.

The live service takes PCM16 mono @ 16 kHz in and returns PCM16 mono
@ 24 kHz out. Capture devices hand us float32 blocks and playback devices
want float32, so everything here converts between those representations.

``resample_audio`` uses numpy linear interpolation with exact
``arange * step`` positioning and 1-sample state carry so chunk boundaries
are interpolated correctly when a capture device cannot open at the wire
rate.
"""

from __future__ import annotations

import base64
from typing import Optional, Tuple

import numpy as np

# PCM16 little-endian, mono
_PCM_SAMPLE_WIDTH = 2


def float32_to_pcm16(samples: np.ndarray) -> bytes:
    """
    Convert float samples in [-1, 1] to PCM16 little-endian bytes.

    Negative samples scale by 0x8000 and positive by 0x7FFF so both ends of
    the range map onto the int16 limits.
    """
    if samples is None or len(samples) == 0:
        return b""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return scaled.astype("<i2").tobytes()


def pcm16_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """Convert PCM16 little-endian bytes to float32 samples (÷ 32768)."""
    if not pcm_bytes:
        return np.zeros(0, dtype=np.float32)
    pcm = np.frombuffer(pcm_bytes, dtype="<i2")
    return pcm.astype(np.float32) / 32768.0


def pad_to_sample_boundary(data: bytes) -> bytes:
    """Zero-pad an odd-length payload so it holds whole 16-bit samples."""
    if len(data) % _PCM_SAMPLE_WIDTH:
        return data + b"\x00" * (_PCM_SAMPLE_WIDTH - len(data) % _PCM_SAMPLE_WIDTH)
    return data


def encode_pcm_base64(pcm_bytes: bytes) -> str:
    return base64.b64encode(pcm_bytes).decode("ascii")


def decode_pcm_base64(data: str) -> bytes:
    return base64.b64decode(data)


def resample_audio(
    pcm_bytes: bytes,
    source_rate: int,
    target_rate: int,
    *,
    state: Optional[tuple] = None,
) -> Tuple[bytes, Optional[tuple]]:
    """
    Resample PCM16 mono audio between sample rates.

    The state tuple carries ``(prev_last_sample_float,)`` so that the
    boundary between consecutive chunks is interpolated correctly.

    Returns a tuple of (converted_bytes, new_state).
    """
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes, state

    audio = np.frombuffer(pcm_bytes, dtype="<i2").astype(np.float64)
    n_in = len(audio)
    n_out = int(round(n_in * target_rate / source_rate))
    if n_out == 0:
        return b"", state

    prev_last: Optional[float] = None
    if isinstance(state, tuple) and len(state) > 0:
        try:
            prev_last = float(state[0])
        except (TypeError, ValueError):
            prev_last = None

    # Step between output samples in input-sample units (0.5 for 8k -> 16k)
    step = float(n_in) / float(n_out)

    if prev_last is not None:
        # extended[0] is the previous chunk's last sample (position -1), so
        # output positions 1*step .. n_out*step straddle the chunk boundary.
        extended = np.empty(n_in + 1, dtype=np.float64)
        extended[0] = prev_last
        extended[1:] = audio
        out_pos = np.arange(1, n_out + 1, dtype=np.float64) * step
        resampled = np.interp(out_pos, np.arange(n_in + 1, dtype=np.float64), extended)
    else:
        out_pos = np.arange(n_out, dtype=np.float64) * step
        resampled = np.interp(out_pos, np.arange(n_in, dtype=np.float64), audio)

    new_state: Optional[tuple] = (float(audio[-1]),)
    resampled = np.clip(resampled, -32768, 32767).astype("<i2")
    return resampled.tobytes(), new_state


__all__ = [
    "float32_to_pcm16",
    "pcm16_to_float32",
    "pad_to_sample_boundary",
    "encode_pcm_base64",
    "decode_pcm_base64",
    "resample_audio",
]
