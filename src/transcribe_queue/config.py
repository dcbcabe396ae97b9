from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from transcribe_queue.services.gemini import DEFAULT_BASE_URL, DEFAULT_MODEL


@dataclass(slots=True)
class Settings:
    host: str
    port: int
    mcp_path: str
    health_path: str
    gemini_api_key: str
    gemini_model: str
    gemini_base_url: str
    request_timeout_seconds: float
    chunk_duration_seconds: float
    concurrency_limit: int
    inter_segment_delay_seconds: float
    retry_max_attempts: int
    retry_base_delay_seconds: float
    retry_multiplier: float
    retry_jitter_seconds: float
    min_transcript_chars: int
    fast_path_max_bytes: int
    downmix: str
    ffmpeg_path: str
    ffprobe_path: str


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _as_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _normalized_path(path: str) -> str:
    if not path.startswith("/"):
        path = f"/{path}"
    return path


def load_settings() -> Settings:
    load_dotenv()

    gemini_api_key = (os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY") or "").strip()
    if not gemini_api_key:
        raise RuntimeError("GEMINI_API_KEY is required")

    downmix = os.getenv("DOWNMIX", "average").strip().lower()
    if downmix not in ("average", "first"):
        raise RuntimeError(f"DOWNMIX must be 'average' or 'first', got {downmix!r}")

    concurrency_limit = _as_int("CONCURRENCY_LIMIT", 3)
    if concurrency_limit < 1:
        raise RuntimeError("CONCURRENCY_LIMIT must be at least 1")
    chunk_duration_seconds = _as_float("CHUNK_DURATION_SECONDS", 60.0)
    if chunk_duration_seconds <= 0:
        raise RuntimeError("CHUNK_DURATION_SECONDS must be positive")

    return Settings(
        host=os.getenv("HOST", "0.0.0.0"),
        port=_as_int("PORT", 3000),
        mcp_path=_normalized_path(os.getenv("MCP_PATH", "/mcp")),
        health_path=_normalized_path(os.getenv("HEALTH_PATH", "/healthz")),
        gemini_api_key=gemini_api_key,
        gemini_model=os.getenv("GEMINI_MODEL", DEFAULT_MODEL),
        gemini_base_url=os.getenv("GEMINI_BASE_URL", DEFAULT_BASE_URL),
        request_timeout_seconds=_as_float("REQUEST_TIMEOUT_SECONDS", 120.0),
        chunk_duration_seconds=chunk_duration_seconds,
        concurrency_limit=concurrency_limit,
        inter_segment_delay_seconds=_as_float("INTER_SEGMENT_DELAY_SECONDS", 1.2),
        retry_max_attempts=_as_int("RETRY_MAX_ATTEMPTS", 3),
        retry_base_delay_seconds=_as_float("RETRY_BASE_DELAY_SECONDS", 3.0),
        retry_multiplier=_as_float("RETRY_MULTIPLIER", 2.0),
        retry_jitter_seconds=_as_float("RETRY_JITTER_SECONDS", 0.5),
        min_transcript_chars=_as_int("MIN_TRANSCRIPT_CHARS", 1),
        fast_path_max_bytes=_as_int("FAST_PATH_MAX_BYTES", 512 * 1024),
        downmix=downmix,
        ffmpeg_path=os.getenv("FFMPEG_PATH", "ffmpeg"),
        ffprobe_path=os.getenv("FFPROBE_PATH", "ffprobe"),
    )
