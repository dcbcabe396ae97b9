from __future__ import annotations

import atexit
import logging

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from transcribe_queue.audio.decoder import FFmpegDecoder
from transcribe_queue.audio.resampler import Resampler
from transcribe_queue.config import Settings, load_settings
from transcribe_queue.mcp_tools import ToolRegistry
from transcribe_queue.pipeline import JobRunner
from transcribe_queue.progress import ProgressEvent
from transcribe_queue.retry import RetryingCaller, RetryPolicy
from transcribe_queue.scheduler import Scheduler
from transcribe_queue.services.fetcher import MediaFetcher
from transcribe_queue.services.gemini import GeminiAnalyzer, GeminiClient, GeminiTranscriber

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
logger = logging.getLogger(__name__)


class AppRuntime:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

        client = GeminiClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout_seconds=settings.request_timeout_seconds,
        )
        retrying = RetryingCaller(
            RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay_seconds=settings.retry_base_delay_seconds,
                multiplier=settings.retry_multiplier,
                jitter_seconds=settings.retry_jitter_seconds,
            )
        )
        self.runner = JobRunner(
            decoder=FFmpegDecoder(ffmpeg_path=settings.ffmpeg_path, ffprobe_path=settings.ffprobe_path),
            resampler=Resampler(downmix="first" if settings.downmix == "first" else "average"),
            transcriber=GeminiTranscriber(client),
            analyzer=GeminiAnalyzer(client),
            retrying=retrying,
            fetcher=MediaFetcher(timeout_seconds=settings.request_timeout_seconds),
            chunk_duration_seconds=settings.chunk_duration_seconds,
            inter_segment_delay_seconds=settings.inter_segment_delay_seconds,
            min_transcript_chars=settings.min_transcript_chars,
            fast_path_max_bytes=settings.fast_path_max_bytes,
        )
        self.scheduler = Scheduler(self.runner, concurrency_limit=settings.concurrency_limit)
        self.scheduler.subscribe(_log_progress)

    def close(self) -> None:
        self.scheduler.close()


def _log_progress(event: ProgressEvent) -> None:
    logger.info("Job %s [%s] %s", event.job_id, event.status, event.message)


def create_app(runtime: AppRuntime) -> FastMCP:
    mcp = FastMCP(name="transcribe-queue")

    tools = ToolRegistry(runtime.scheduler)
    tools.register(mcp)

    @mcp.custom_route(runtime.settings.health_path, methods=["GET"])
    async def health(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "ok": True,
                "running_jobs": runtime.scheduler.running_count,
                "concurrency_limit": runtime.scheduler.concurrency_limit,
                "progress": runtime.scheduler.progress().to_dict(),
                "mcp_path": runtime.settings.mcp_path,
            }
        )

    return mcp


def cli() -> None:
    settings = load_settings()
    runtime = AppRuntime(settings)
    atexit.register(runtime.close)

    app = create_app(runtime)
    logger.info("Starting MCP server on %s:%s%s", settings.host, settings.port, settings.mcp_path)
    app.run(
        transport="http",
        host=settings.host,
        port=settings.port,
        path=settings.mcp_path,
    )


if __name__ == "__main__":
    cli()
