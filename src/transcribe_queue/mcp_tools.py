from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Any

from fastmcp import FastMCP
from mcp.types import ToolAnnotations

from transcribe_queue.scheduler import Scheduler
from transcribe_queue.services.fetcher import split_urls
from transcribe_queue.types import FileSource, UrlSource


class ToolRegistry:
    def __init__(self, scheduler: Scheduler) -> None:
        self.scheduler = scheduler

    def register(self, mcp: FastMCP) -> None:
        _ro = ToolAnnotations(readOnlyHint=True)

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False))
        def transcribe_url(urls: str) -> dict[str, Any]:
            """Queue one or more links for transcription.

            Args:
                urls: One URL, or several separated by spaces, newlines or commas.

            Returns:
                The queued jobs with their ids and current status.
            """
            addresses = split_urls(urls)
            if not addresses:
                return {"error": "no_valid_urls", "message": "Provide at least one http(s) URL"}

            jobs = self.scheduler.submit_many(UrlSource(address=address) for address in addresses)
            return {
                "count": len(jobs),
                "jobs": [{"job_id": job.id, "source": job.source_label, "status": job.status} for job in jobs],
            }

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False))
        def transcribe_file(path: str, mime_type: str | None = None) -> dict[str, Any]:
            """Queue a local audio or video file for transcription.

            Args:
                path: Path to the media file on the server.
                mime_type: Optional MIME type; guessed from the extension when omitted.
            """
            media_path = Path(path).expanduser()
            if not media_path.is_file():
                return {"error": "file_not_found", "path": path}

            data = media_path.read_bytes()
            guessed = mime_type or mimetypes.guess_type(media_path.name)[0] or "application/octet-stream"
            job = self.scheduler.submit(
                FileSource(data=data, mime_type=guessed, name=media_path.name, size=len(data))
            )
            return {"job_id": job.id, "source": job.source_label, "status": job.status}

        @mcp.tool(annotations=_ro)
        def job_status(job_id: str) -> dict[str, Any]:
            job = self.scheduler.get(job_id)
            if job is None:
                return {"error": "job_not_found", "job_id": job_id}
            return job.to_dict()

        @mcp.tool(annotations=_ro)
        def list_jobs() -> dict[str, Any]:
            jobs = self.scheduler.jobs()
            return {
                "count": len(jobs),
                "progress": self.scheduler.progress().to_dict(),
                "items": [job.to_dict() for job in jobs],
            }

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False, idempotentHint=True))
        def remove_job(job_id: str) -> dict[str, Any]:
            removed = self.scheduler.remove(job_id)
            return {"job_id": job_id, "removed": removed}

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=True))
        def clear_jobs() -> dict[str, Any]:
            return {"removed": self.scheduler.clear_all()}
