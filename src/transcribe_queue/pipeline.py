from __future__ import annotations

import logging
import mimetypes
import re
from collections.abc import Iterable, Iterator

from transcribe_queue.audio.decoder import FFmpegDecoder
from transcribe_queue.audio.resampler import Resampler
from transcribe_queue.audio.segmenter import Segmenter, format_time_label
from transcribe_queue.audio.wav import WAV_MIME_TYPE, encode_wav
from transcribe_queue.errors import (
    DecodeError,
    EmptyMediaError,
    InsufficientContentError,
    NetworkError,
    RateLimited,
    ServiceError,
    TranscribeError,
)
from transcribe_queue.progress import JobContext
from transcribe_queue.retry import RetriesExhausted, RetryingCaller
from transcribe_queue.services.fetcher import MediaFetcher, is_direct_media_url, is_youtube_url
from transcribe_queue.services.gemini import GeminiAnalyzer, GeminiTranscriber
from transcribe_queue.types import (
    AnalysisResult,
    EncodedChunk,
    SourceReference,
    TranscriptionResult,
    TranscriptPiece,
    UrlSource,
)

logger = logging.getLogger(__name__)

NATIVE_AUDIO_PATTERN = re.compile(r"\.(mp3|wav|m4a|aac|ogg|flac|webm)$", re.IGNORECASE)


def is_native_audio(mime_type: str, name: str) -> bool:
    mime = (mime_type or "").lower()
    return "webm" in mime or mime.startswith("audio/") or bool(NATIVE_AUDIO_PATTERN.search(name or ""))


def placeholder_text(time_label: str, attempts: int) -> str:
    return f"\n{time_label} [Failed: transcription unavailable after {attempts} attempt(s)]\n"


def assemble_transcript(pieces: Iterable[TranscriptPiece]) -> str:
    ordered = sorted(pieces, key=lambda piece: piece.segment_index)
    return "\n".join(piece.text for piece in ordered)


def content_length(pieces: Iterable[TranscriptPiece]) -> int:
    return sum(len(piece.text.strip()) for piece in pieces if not piece.failed)


def build_result(
    text: str,
    analysis: AnalysisResult,
    references: Iterable[SourceReference] | None = None,
) -> TranscriptionResult:
    speakers = tuple(dict.fromkeys(speaker.strip() for speaker in analysis.speakers if speaker.strip()))
    refs = tuple(references or ())
    return TranscriptionResult(
        text=text,
        summary=analysis.summary,
        key_points=tuple(analysis.key_points),
        speakers=speakers,
        suggested_title=analysis.suggested_title,
        source_references=refs or None,
    )


class JobRunner:
    def __init__(
        self,
        *,
        decoder: FFmpegDecoder,
        resampler: Resampler,
        transcriber: GeminiTranscriber,
        analyzer: GeminiAnalyzer,
        retrying: RetryingCaller,
        fetcher: MediaFetcher | None = None,
        chunk_duration_seconds: float = 60.0,
        inter_segment_delay_seconds: float = 1.2,
        min_transcript_chars: int = 1,
        fast_path_max_bytes: int = 512 * 1024,
    ) -> None:
        if chunk_duration_seconds <= 0:
            raise ValueError("chunk_duration_seconds must be positive")
        self.decoder = decoder
        self.resampler = resampler
        self.transcriber = transcriber
        self.analyzer = analyzer
        self.retrying = retrying
        self.fetcher = fetcher
        self.chunk_duration_seconds = chunk_duration_seconds
        self.inter_segment_delay_seconds = inter_segment_delay_seconds
        self.min_transcript_chars = min_transcript_chars
        self.fast_path_max_bytes = fast_path_max_bytes

    def run(self, ctx: JobContext) -> TranscriptionResult:
        source = ctx.source
        if isinstance(source, UrlSource):
            return self._run_url(ctx, source.address)
        return self._run_file(ctx, data=source.data, mime_type=source.mime_type, name=source.name)

    def _run_url(self, ctx: JobContext, url: str) -> TranscriptionResult:
        if self.fetcher is not None and is_direct_media_url(url):
            fetcher = self.fetcher
            ctx.advance("optimizing", "Downloading media...")
            try:
                media = self.retrying.call(lambda: fetcher.fetch(url), label=f"download {url}")
                chunks, total = self._prepare(ctx, data=media.data, mime_type=media.mime_type, name=media.name)
            except (NetworkError, RateLimited, ServiceError, DecodeError, EmptyMediaError) as exc:
                logger.warning("Direct media path failed for %s, using grounded extraction: %s", url, exc)
            else:
                return self._transcribe_prepared(ctx, chunks, total)

        ctx.check_cancelled()
        ctx.advance("processing", "Reading YouTube captions..." if is_youtube_url(url) else "Analyzing URL...")
        try:
            extraction = self.retrying.call(
                lambda: self.analyzer.extract_from_url(url),
                label=f"grounded extraction {url}",
            )
        except TranscribeError as exc:
            raise ServiceError("Could not extract a transcript from the link. Try uploading the file instead.") from exc

        pieces = [TranscriptPiece(segment_index=0, text=extraction.text)]
        return self._finalize(ctx, pieces, extraction.source_references)

    def _run_file(self, ctx: JobContext, *, data: bytes, mime_type: str, name: str) -> TranscriptionResult:
        chunks, total = self._prepare(ctx, data=data, mime_type=mime_type, name=name)
        return self._transcribe_prepared(ctx, chunks, total)

    def _prepare(
        self,
        ctx: JobContext,
        *,
        data: bytes,
        mime_type: str,
        name: str,
    ) -> tuple[Iterator[EncodedChunk], int]:
        ctx.advance("optimizing", "Preparing audio...")
        if self._use_fast_path(data, mime_type, name):
            mime = mime_type or mimetypes.guess_type(name)[0] or "application/octet-stream"
            logger.info("Sending %s (%d bytes) without re-encoding", name, len(data))
            chunks: Iterator[EncodedChunk] = iter([EncodedChunk(segment_index=0, mime_type=mime, data=data)])
            total = 1
        else:
            audio = self.decoder.decode(data, name)
            samples = self.resampler.resample(audio)
            segmenter = Segmenter(samples, self.resampler.target_rate, self.chunk_duration_seconds)
            total = len(segmenter)
            if total == 0:
                raise EmptyMediaError("Media contains no audio to transcribe")
            chunks = (
                EncodedChunk(
                    segment_index=segment.index,
                    mime_type=WAV_MIME_TYPE,
                    data=encode_wav(segment.samples, segment.sample_rate),
                )
                for segment in segmenter
            )
        return chunks, total

    def _transcribe_prepared(
        self,
        ctx: JobContext,
        chunks: Iterator[EncodedChunk],
        total: int,
    ) -> TranscriptionResult:
        ctx.check_cancelled()
        ctx.advance("uploading", f"Packaging {total} segment(s)...")
        packaged: list[EncodedChunk] = []
        for chunk in chunks:
            ctx.check_cancelled()
            packaged.append(chunk)
        pieces = self._transcribe_chunks(ctx, packaged, total)
        return self._finalize(ctx, pieces, None)

    def _use_fast_path(self, data: bytes, mime_type: str, name: str) -> bool:
        return 0 < len(data) <= self.fast_path_max_bytes and is_native_audio(mime_type, name)

    def _transcribe_chunks(
        self,
        ctx: JobContext,
        chunks: list[EncodedChunk],
        total: int,
    ) -> list[TranscriptPiece]:
        pieces: list[TranscriptPiece] = []
        for position, chunk in enumerate(chunks):
            ctx.check_cancelled()
            if position == 0:
                ctx.advance("processing", "Transcribing...")
            else:
                ctx.pause(self.inter_segment_delay_seconds)
            pieces.append(self._transcribe_chunk(chunk))
            ctx.report(
                f"Transcribing segment {position + 1}/{total}",
                segments_done=position + 1,
                segments_total=total,
            )
        return pieces

    def _transcribe_chunk(self, chunk: EncodedChunk) -> TranscriptPiece:
        label = format_time_label(chunk.segment_index * self.chunk_duration_seconds)

        def attempt() -> TranscriptPiece:
            text = self.transcriber.transcribe(chunk.data, chunk.mime_type, label)
            return TranscriptPiece(segment_index=chunk.segment_index, text=text)

        def degrade(exhausted: RetriesExhausted) -> TranscriptPiece:
            return TranscriptPiece(
                segment_index=chunk.segment_index,
                text=placeholder_text(label, exhausted.attempts),
                failed=True,
            )

        return self.retrying.call(attempt, fallback=degrade, label=f"segment {chunk.segment_index} {label}")

    def _finalize(
        self,
        ctx: JobContext,
        pieces: list[TranscriptPiece],
        references: Iterable[SourceReference] | None,
    ) -> TranscriptionResult:
        if content_length(pieces) < self.min_transcript_chars:
            raise InsufficientContentError("Transcript is empty; nothing could be transcribed from this source")
        text = assemble_transcript(pieces)

        ctx.check_cancelled()
        ctx.advance("processing", "Finalizing...")
        analysis = self.retrying.call(lambda: self.analyzer.analyze(text), label="transcript analysis")
        return build_result(text, analysis, references)
