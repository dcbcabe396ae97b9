import threading

import numpy as np
import pytest

from transcribe_queue import pipeline as pipeline_module
from transcribe_queue.audio.resampler import Resampler
from transcribe_queue.errors import (
    DecodeError,
    EmptyMediaError,
    InsufficientContentError,
    NetworkError,
    RateLimited,
    ServiceError,
)
from transcribe_queue.pipeline import (
    JobRunner,
    assemble_transcript,
    build_result,
    is_native_audio,
)
from transcribe_queue.progress import JobContext, ProgressEvent
from transcribe_queue.retry import RetryingCaller, RetryPolicy
from transcribe_queue.services.gemini import parse_analysis
from transcribe_queue.types import (
    AnalysisResult,
    FetchedMedia,
    FileSource,
    GroundedExtraction,
    PcmAudio,
    SourceReference,
    TranscriptPiece,
    UrlSource,
)

ANALYSIS = AnalysisResult(
    summary="Two people talk.",
    key_points=["greeting"],
    speakers=["P1", "P2", "P1"],
    suggested_title="Greeting",
)


class FakeDecoder:
    def __init__(self, seconds: float = 2.5, sample_rate: int = 16000, error: Exception | None = None) -> None:
        self.seconds = seconds
        self.sample_rate = sample_rate
        self.error = error
        self.calls = 0

    def decode(self, data: bytes, name: str = "media") -> PcmAudio:
        self.calls += 1
        if self.error is not None:
            raise self.error
        frames = int(self.seconds * self.sample_rate)
        samples = np.full((frames, 1), 0.25, dtype=np.float32)
        return PcmAudio(samples=samples, sample_rate=self.sample_rate, channels=1)


class FakeTranscriber:
    def __init__(self, failing_labels: set[str] | None = None, error: Exception | None = None) -> None:
        self.failing_labels = failing_labels or set()
        self.error = error or NetworkError("connection reset")
        self.calls: list[tuple[str, str, int]] = []

    def transcribe(self, audio_bytes: bytes, mime_type: str, start_time_label: str) -> str:
        self.calls.append((start_time_label, mime_type, len(audio_bytes)))
        if start_time_label in self.failing_labels:
            raise self.error
        return f"speech {start_time_label}"


class FakeAnalyzer:
    def __init__(self, raw: str | None = None, extraction: GroundedExtraction | None = None) -> None:
        self.raw = raw
        self.extraction = extraction
        self.analyzed: list[str] = []
        self.extracted: list[str] = []

    def analyze(self, full_text: str) -> AnalysisResult:
        self.analyzed.append(full_text)
        if self.raw is not None:
            return parse_analysis(self.raw)
        return ANALYSIS

    def extract_from_url(self, url: str) -> GroundedExtraction:
        self.extracted.append(url)
        if self.extraction is None:
            raise RateLimited("quota")
        return self.extraction


class FakeFetcher:
    def __init__(self, media: FetchedMedia | None = None) -> None:
        self.media = media
        self.urls: list[str] = []

    def fetch(self, url: str) -> FetchedMedia:
        self.urls.append(url)
        if self.media is None:
            raise NetworkError("unreachable")
        return self.media


def _runner(
    *,
    decoder: FakeDecoder | None = None,
    transcriber: FakeTranscriber | None = None,
    analyzer: FakeAnalyzer | None = None,
    fetcher: FakeFetcher | None = None,
    fast_path_max_bytes: int = 0,
    min_transcript_chars: int = 1,
) -> JobRunner:
    return JobRunner(
        decoder=decoder or FakeDecoder(),  # type: ignore[arg-type]
        resampler=Resampler(),
        transcriber=transcriber or FakeTranscriber(),  # type: ignore[arg-type]
        analyzer=analyzer or FakeAnalyzer(),  # type: ignore[arg-type]
        retrying=RetryingCaller(RetryPolicy(max_attempts=3, jitter_seconds=0.0), sleep=lambda seconds: None),
        fetcher=fetcher,  # type: ignore[arg-type]
        chunk_duration_seconds=1.0,
        inter_segment_delay_seconds=0.0,
        min_transcript_chars=min_transcript_chars,
        fast_path_max_bytes=fast_path_max_bytes,
    )


def _context(source: FileSource | UrlSource) -> tuple[JobContext, list[ProgressEvent]]:
    events: list[ProgressEvent] = []
    return JobContext("job-1", source, events.append, threading.Event()), events


def _file(data: bytes = b"\x00" * 2048, mime_type: str = "video/mp4", name: str = "talk.mp4") -> FileSource:
    return FileSource(data=data, mime_type=mime_type, name=name, size=len(data))


def test_file_job_transcribes_segments_in_order() -> None:
    transcriber = FakeTranscriber()
    analyzer = FakeAnalyzer()
    ctx, events = _context(_file())

    result = _runner(transcriber=transcriber, analyzer=analyzer).run(ctx)

    assert [call[0] for call in transcriber.calls] == ["[00:00]", "[00:01]", "[00:02]"]
    assert all(call[1] == "audio/wav" for call in transcriber.calls)
    assert [call[2] for call in transcriber.calls] == [44 + 32000, 44 + 32000, 44 + 16000]
    assert result.text == "speech [00:00]\nspeech [00:01]\nspeech [00:02]"
    assert analyzer.analyzed == [result.text]
    assert result.speakers == ("P1", "P2")
    assert result.suggested_title == "Greeting"
    assert result.source_references is None

    statuses = [event.status for event in events if event.status is not None]
    assert statuses == ["optimizing", "uploading", "processing", "processing"]
    segment_messages = [event.message for event in events if event.segments_total]
    assert segment_messages == [
        "Transcribing segment 1/3",
        "Transcribing segment 2/3",
        "Transcribing segment 3/3",
    ]


def test_failed_segment_becomes_placeholder() -> None:
    transcriber = FakeTranscriber(failing_labels={"[00:01]"})
    ctx, _ = _context(_file())

    result = _runner(transcriber=transcriber).run(ctx)

    assert [call[0] for call in transcriber.calls].count("[00:01]") == 3
    lines = [line for line in result.text.splitlines() if line]
    assert lines[0] == "speech [00:00]"
    assert lines[1].startswith("[00:01] [Failed:")
    assert lines[2] == "speech [00:02]"


def test_all_segments_failing_is_insufficient_content() -> None:
    transcriber = FakeTranscriber(failing_labels={"[00:00]", "[00:01]", "[00:02]"}, error=RateLimited("429"))
    analyzer = FakeAnalyzer()
    ctx, _ = _context(_file())

    with pytest.raises(InsufficientContentError):
        _runner(transcriber=transcriber, analyzer=analyzer).run(ctx)
    assert analyzer.analyzed == []


def test_service_error_on_segment_fails_the_job() -> None:
    transcriber = FakeTranscriber(failing_labels={"[00:01]"}, error=ServiceError("rejected"))
    ctx, _ = _context(_file())

    with pytest.raises(ServiceError):
        _runner(transcriber=transcriber).run(ctx)
    assert [call[0] for call in transcriber.calls] == ["[00:00]", "[00:01]"]


def test_malformed_analysis_fails_after_successful_transcription() -> None:
    transcriber = FakeTranscriber()
    ctx, _ = _context(_file())

    with pytest.raises(ServiceError):
        _runner(transcriber=transcriber, analyzer=FakeAnalyzer(raw="{oops")).run(ctx)
    assert len(transcriber.calls) == 3


def test_empty_media_fails_fast() -> None:
    transcriber = FakeTranscriber()
    ctx, _ = _context(_file())

    with pytest.raises(EmptyMediaError):
        _runner(decoder=FakeDecoder(seconds=0), transcriber=transcriber).run(ctx)
    assert transcriber.calls == []


def test_decode_errors_propagate() -> None:
    ctx, _ = _context(_file())

    with pytest.raises(DecodeError):
        _runner(decoder=FakeDecoder(error=DecodeError("corrupt"))).run(ctx)


def test_minimum_transcript_length() -> None:
    ctx, _ = _context(_file())

    with pytest.raises(InsufficientContentError):
        _runner(min_transcript_chars=1000).run(ctx)


def test_resamples_before_segmenting() -> None:
    transcriber = FakeTranscriber()
    ctx, _ = _context(_file())

    _runner(decoder=FakeDecoder(seconds=1.0, sample_rate=48000), transcriber=transcriber).run(ctx)

    assert [call[2] for call in transcriber.calls] == [44 + 32000]


def test_small_native_audio_skips_decoding() -> None:
    decoder = FakeDecoder()
    transcriber = FakeTranscriber()
    ctx, _ = _context(_file(data=b"ID3" * 10, mime_type="audio/mpeg", name="memo.mp3"))

    result = _runner(decoder=decoder, transcriber=transcriber, fast_path_max_bytes=1024).run(ctx)

    assert decoder.calls == 0
    assert transcriber.calls == [("[00:00]", "audio/mpeg", 30)]
    assert result.text == "speech [00:00]"


def test_large_or_video_files_are_decoded() -> None:
    decoder = FakeDecoder()
    ctx, _ = _context(_file(data=b"\x00" * 100, mime_type="video/mp4", name="clip.mp4"))

    _runner(decoder=decoder, fast_path_max_bytes=1024).run(ctx)

    assert decoder.calls == 1


def test_direct_media_url_is_downloaded_and_decoded() -> None:
    fetcher = FakeFetcher(FetchedMedia(data=b"\x00" * 4096, mime_type="video/mp4", name="talk.mp4"))
    analyzer = FakeAnalyzer()
    ctx, _ = _context(UrlSource(address="https://cdn.example.com/talk.mp4?sig=1"))

    result = _runner(fetcher=fetcher, analyzer=analyzer).run(ctx)

    assert fetcher.urls == ["https://cdn.example.com/talk.mp4?sig=1"]
    assert analyzer.extracted == []
    assert result.text.startswith("speech [00:00]")


def test_page_url_uses_grounded_extraction() -> None:
    references = [SourceReference(uri="https://example.com/captions", title="Captions")]
    analyzer = FakeAnalyzer(extraction=GroundedExtraction(text="[00:00] hello", source_references=references))
    fetcher = FakeFetcher()
    ctx, events = _context(UrlSource(address="https://www.youtube.com/watch?v=abc"))

    result = _runner(analyzer=analyzer, fetcher=fetcher).run(ctx)

    assert fetcher.urls == []
    assert result.text == "[00:00] hello"
    assert result.source_references == tuple(references)
    assert events[0].message == "Reading YouTube captions..."


def test_failed_download_falls_back_to_grounded_extraction() -> None:
    analyzer = FakeAnalyzer(extraction=GroundedExtraction(text="from search", source_references=[]))
    fetcher = FakeFetcher()
    ctx, _ = _context(UrlSource(address="https://cdn.example.com/episode.mp3"))

    result = _runner(analyzer=analyzer, fetcher=fetcher).run(ctx)

    assert len(fetcher.urls) == 3
    assert analyzer.extracted == ["https://cdn.example.com/episode.mp3"]
    assert result.text == "from search"
    assert result.source_references is None


def test_grounded_extraction_failure_is_a_service_error() -> None:
    ctx, _ = _context(UrlSource(address="https://example.com/article"))

    with pytest.raises(ServiceError, match="uploading the file"):
        _runner(analyzer=FakeAnalyzer(extraction=None)).run(ctx)


def test_assembly_sorts_by_segment_index() -> None:
    pieces = [
        TranscriptPiece(segment_index=2, text="c"),
        TranscriptPiece(segment_index=0, text="a"),
        TranscriptPiece(segment_index=1, text="b"),
    ]

    assert assemble_transcript(pieces) == "a\nb\nc"


def test_build_result_deduplicates_speakers_in_order() -> None:
    analysis = AnalysisResult(summary="s", key_points=["k"], speakers=["B", " A ", "B", ""], suggested_title="t")

    result = build_result("text", analysis)

    assert result.speakers == ("B", "A")
    assert result.key_points == ("k",)


@pytest.mark.parametrize(
    ("mime_type", "name", "expected"),
    [
        ("audio/mpeg", "x.bin", True),
        ("video/webm", "x", True),
        ("", "memo.M4A", True),
        ("video/mp4", "clip.mp4", False),
        ("application/octet-stream", "doc.pdf", False),
    ],
)
def test_native_audio_detection(mime_type: str, name: str, expected: bool) -> None:
    assert is_native_audio(mime_type, name) is expected


def test_segments_are_packaged_before_processing(monkeypatch: pytest.MonkeyPatch) -> None:
    ctx, events = _context(_file())
    statuses_at_encode: list[str | None] = []
    real_encode_wav = pipeline_module.encode_wav

    def recording(samples: np.ndarray, sample_rate: int = 16000) -> bytes:
        statuses_at_encode.append([event.status for event in events if event.status][-1])
        return real_encode_wav(samples, sample_rate)

    monkeypatch.setattr(pipeline_module, "encode_wav", recording)

    _runner(decoder=FakeDecoder(seconds=2.5)).run(ctx)

    assert statuses_at_encode == ["uploading"] * 3
