from __future__ import annotations

import json
import logging
import subprocess
import tempfile
from pathlib import Path

import numpy as np

from transcribe_queue.errors import DecodeError
from transcribe_queue.types import PcmAudio

logger = logging.getLogger(__name__)

CONVERT_HINT = "Try converting the file to MP3."


class FFmpegDecoder:
    """Decodes arbitrary media into float32 PCM at its native rate and channel count."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        timeout_seconds: float = 600.0,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.timeout_seconds = timeout_seconds

    def decode(self, data: bytes, name: str = "media") -> PcmAudio:
        if not data:
            raise DecodeError(f"Media is empty. {CONVERT_HINT}")

        suffix = Path(name).suffix or ".bin"
        with tempfile.TemporaryDirectory(prefix="transcribe-queue-") as work_dir:
            media_path = Path(work_dir) / f"input{suffix}"
            media_path.write_bytes(data)

            sample_rate, channels = self._probe(media_path)
            raw = self._run(
                [
                    self.ffmpeg_path,
                    "-hide_banner",
                    "-nostdin",
                    "-loglevel",
                    "error",
                    "-i",
                    str(media_path),
                    "-vn",
                    "-map",
                    "0:a:0",
                    "-ac",
                    str(channels),
                    "-ar",
                    str(sample_rate),
                    "-f",
                    "f32le",
                    "pipe:1",
                ]
            )

        samples = np.frombuffer(raw, dtype="<f4")
        usable = (samples.size // channels) * channels
        samples = samples[:usable].reshape((-1, channels)).astype(np.float32)
        logger.debug(
            "Decoded %s: %d frames, %d Hz, %d channel(s)",
            name,
            samples.shape[0],
            sample_rate,
            channels,
        )
        return PcmAudio(samples=samples, sample_rate=sample_rate, channels=channels)

    def _probe(self, media_path: Path) -> tuple[int, int]:
        stdout = self._run(
            [
                self.ffprobe_path,
                "-v",
                "error",
                "-select_streams",
                "a:0",
                "-show_entries",
                "stream=sample_rate,channels",
                "-print_format",
                "json",
                str(media_path),
            ]
        )
        try:
            payload = json.loads(stdout.decode("utf-8", errors="replace") or "{}")
        except json.JSONDecodeError as exc:
            raise DecodeError(f"Could not read media stream info. {CONVERT_HINT}") from exc

        streams = payload.get("streams") if isinstance(payload, dict) else None
        if not isinstance(streams, list) or not streams or not isinstance(streams[0], dict):
            raise DecodeError(f"No audio stream found in media. {CONVERT_HINT}")

        stream = streams[0]
        try:
            sample_rate = int(stream.get("sample_rate") or 0)
            channels = int(stream.get("channels") or 0)
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"Unreadable audio stream parameters. {CONVERT_HINT}") from exc
        if sample_rate <= 0 or channels <= 0:
            raise DecodeError(f"Unsupported audio stream parameters. {CONVERT_HINT}")
        return sample_rate, channels

    def _run(self, cmd: list[str]) -> bytes:
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise DecodeError(f"{cmd[0]} is not installed or not on PATH") from exc
        except subprocess.TimeoutExpired as exc:
            raise DecodeError(f"{Path(cmd[0]).name} timed out while reading media") from exc

        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="replace").strip()
            message = stderr[-400:] or f"{Path(cmd[0]).name} failed"
            raise DecodeError(f"Failed to decode media: {message}. {CONVERT_HINT}")
        return completed.stdout
