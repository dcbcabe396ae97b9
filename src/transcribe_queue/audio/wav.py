from __future__ import annotations

import struct

import numpy as np

from transcribe_queue.audio.resampler import TARGET_SAMPLE_RATE

WAV_MIME_TYPE = "audio/wav"
HEADER_SIZE = 44

_PCM_FORMAT_TAG = 1
_CHANNELS = 1
_BITS_PER_SAMPLE = 16
_BLOCK_ALIGN = _CHANNELS * _BITS_PER_SAMPLE // 8


def to_int16(samples: np.ndarray) -> np.ndarray:
    values = np.asarray(samples)
    if values.dtype == np.int16:
        return values
    clipped = np.clip(values.astype(np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return scaled.astype(np.int16)


def encode_wav(samples: np.ndarray, sample_rate: int = TARGET_SAMPLE_RATE) -> bytes:
    """Wrap mono samples in a 44-byte RIFF/WAVE header with 16-bit PCM data."""
    pcm = to_int16(samples).astype("<i2", copy=False)
    data_size = pcm.size * _BLOCK_ALIGN
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,
        _PCM_FORMAT_TAG,
        _CHANNELS,
        sample_rate,
        sample_rate * _BLOCK_ALIGN,
        _BLOCK_ALIGN,
        _BITS_PER_SAMPLE,
        b"data",
        data_size,
    )
    return header + pcm.tobytes()
