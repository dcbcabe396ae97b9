from __future__ import annotations

import math
from collections.abc import Iterator

import numpy as np

from transcribe_queue.types import AudioSegment


def format_time_label(seconds: float) -> str:
    """Render an offset as ``[MM:SS]``; minutes keep growing past an hour."""
    whole = int(max(seconds, 0))
    minutes, secs = divmod(whole, 60)
    return f"[{minutes:02d}:{secs:02d}]"


class Segmenter:
    """Splits a mono waveform into fixed-duration segments.

    Iterating yields ``AudioSegment`` views over the source buffer; every new
    iteration starts again at segment 0. Segment ``i`` covers
    ``[i * C, min((i + 1) * C, D))``.
    """

    def __init__(self, samples: np.ndarray, sample_rate: int, chunk_duration_seconds: float) -> None:
        if chunk_duration_seconds <= 0:
            raise ValueError("chunk_duration_seconds must be positive")
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        samples = np.asarray(samples)
        if samples.ndim != 1:
            raise ValueError("Segmenter expects mono samples")
        self.samples = samples
        self.sample_rate = sample_rate
        self.chunk_duration_seconds = float(chunk_duration_seconds)

    @property
    def duration_seconds(self) -> float:
        return self.samples.shape[0] / float(self.sample_rate)

    @property
    def frames_per_chunk(self) -> float:
        return self.chunk_duration_seconds * self.sample_rate

    def __len__(self) -> int:
        total = self.samples.shape[0]
        if total == 0:
            return 0
        count = math.ceil(round(total / self.frames_per_chunk, 9))
        # A trailing boundary rounded onto the last frame would yield an empty segment.
        while count > 1 and self._boundary(count - 1) >= total:
            count -= 1
        return count

    def __iter__(self) -> Iterator[AudioSegment]:
        total = self.samples.shape[0]
        count = len(self)
        for index in range(count):
            start = self._boundary(index)
            end = total if index == count - 1 else min(self._boundary(index + 1), total)
            yield AudioSegment(
                index=index,
                start_offset_seconds=index * self.chunk_duration_seconds,
                samples=self.samples[start:end],
                sample_rate=self.sample_rate,
            )

    def _boundary(self, index: int) -> int:
        return int(round(index * self.frames_per_chunk))
