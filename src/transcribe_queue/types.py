from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union

import numpy as np

JobStatus = Literal["idle", "optimizing", "uploading", "processing", "success", "error"]
ErrorKind = Literal[
    "decode",
    "empty_media",
    "insufficient_content",
    "rate_limited",
    "network",
    "service",
    "internal",
]

ACTIVE_STATUSES: tuple[JobStatus, ...] = ("optimizing", "uploading", "processing")
TERMINAL_STATUSES: tuple[JobStatus, ...] = ("success", "error")

# Allowed forward transitions; "error" is reachable from every non-terminal state.
STATUS_ORDER: dict[JobStatus, int] = {
    "idle": 0,
    "optimizing": 1,
    "uploading": 2,
    "processing": 3,
    "success": 4,
    "error": 4,
}


@dataclass(frozen=True, slots=True)
class FileSource:
    data: bytes
    mime_type: str
    name: str
    size: int


@dataclass(frozen=True, slots=True)
class UrlSource:
    address: str


Source = Union[FileSource, UrlSource]


@dataclass(frozen=True, slots=True)
class PcmAudio:
    """Decoded audio at its native rate, shaped ``(frames, channels)``."""

    samples: np.ndarray
    sample_rate: int
    channels: int

    @property
    def duration_seconds(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.samples.shape[0] / float(self.sample_rate)


@dataclass(frozen=True, slots=True)
class AudioSegment:
    index: int
    start_offset_seconds: float
    samples: np.ndarray
    sample_rate: int

    @property
    def duration_seconds(self) -> float:
        return self.samples.shape[0] / float(self.sample_rate)


@dataclass(frozen=True, slots=True)
class EncodedChunk:
    segment_index: int
    mime_type: str
    data: bytes


@dataclass(frozen=True, slots=True)
class TranscriptPiece:
    segment_index: int
    text: str
    failed: bool = False


@dataclass(frozen=True, slots=True)
class SourceReference:
    uri: str
    title: str


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    summary: str
    key_points: list[str]
    speakers: list[str]
    suggested_title: str


@dataclass(frozen=True, slots=True)
class GroundedExtraction:
    text: str
    source_references: list[SourceReference]


@dataclass(frozen=True, slots=True)
class FetchedMedia:
    data: bytes
    mime_type: str
    name: str


@dataclass(frozen=True, slots=True)
class TranscriptionResult:
    text: str
    summary: str
    key_points: tuple[str, ...]
    speakers: tuple[str, ...]
    suggested_title: str
    source_references: tuple[SourceReference, ...] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "text": self.text,
            "summary": self.summary,
            "key_points": list(self.key_points),
            "speakers": list(self.speakers),
            "suggested_title": self.suggested_title,
        }
        if self.source_references:
            payload["source_references"] = [
                {"uri": ref.uri, "title": ref.title} for ref in self.source_references
            ]
        return payload


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    kind: ErrorKind
    message: str


@dataclass(slots=True)
class Job:
    id: str
    source: Source
    created_at: float
    sequence: int
    status: JobStatus = "idle"
    progress_message: str = "Waiting..."
    transcript: TranscriptionResult | None = None
    error: ErrorInfo | None = None
    segments_done: int = 0
    segments_total: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def source_label(self) -> str:
        if isinstance(self.source, UrlSource):
            return self.source.address
        return self.source.name

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "source_type": "url" if isinstance(self.source, UrlSource) else "file",
            "source": self.source_label,
            "status": self.status,
            "progress_message": self.progress_message,
            "segments_done": self.segments_done,
            "segments_total": self.segments_total,
            "created_at": self.created_at,
            "transcript": self.transcript.to_dict() if self.transcript else None,
            "error": {"kind": self.error.kind, "message": self.error.message} if self.error else None,
        }
