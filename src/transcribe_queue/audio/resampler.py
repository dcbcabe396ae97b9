from __future__ import annotations

from math import gcd
from typing import Literal

import numpy as np
from scipy.signal import resample_poly

from transcribe_queue.errors import DecodeError
from transcribe_queue.types import PcmAudio

TARGET_SAMPLE_RATE = 16000

DownmixPolicy = Literal["average", "first"]


class Resampler:
    """Converts decoded PCM to mono float32 at the target rate.

    ``downmix="average"`` takes the mean of all channels, ``"first"`` keeps
    channel 0 only. Resampling is polyphase with scipy's default Kaiser
    window, so the output is a pure function of the input.
    """

    def __init__(self, target_rate: int = TARGET_SAMPLE_RATE, downmix: DownmixPolicy = "average") -> None:
        if target_rate <= 0:
            raise ValueError("target_rate must be positive")
        if downmix not in ("average", "first"):
            raise ValueError(f"Unknown downmix policy: {downmix}")
        self.target_rate = target_rate
        self.downmix = downmix

    def resample(self, audio: PcmAudio) -> np.ndarray:
        samples = np.asarray(audio.samples)
        if samples.ndim == 0:
            raise DecodeError("Decoded media contains no PCM data")
        if audio.sample_rate <= 0:
            raise DecodeError(f"Invalid source sample rate: {audio.sample_rate}")

        mono = self._to_mono(samples)
        if mono.size == 0:
            return np.zeros(0, dtype=np.float32)

        if audio.sample_rate == self.target_rate:
            return mono.astype(np.float32, copy=True)

        divisor = gcd(self.target_rate, audio.sample_rate)
        up = self.target_rate // divisor
        down = audio.sample_rate // divisor
        resampled = resample_poly(mono.astype(np.float32, copy=False), up, down)
        return np.asarray(resampled, dtype=np.float32)

    def _to_mono(self, samples: np.ndarray) -> np.ndarray:
        if samples.ndim == 1:
            return samples
        if samples.ndim != 2:
            raise DecodeError(f"Unexpected PCM layout with {samples.ndim} dimensions")
        if samples.shape[1] == 1 or self.downmix == "first":
            return samples[:, 0]
        return samples.mean(axis=1, dtype=np.float32)
