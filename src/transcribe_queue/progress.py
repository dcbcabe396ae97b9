from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from transcribe_queue.errors import JobCancelled
from transcribe_queue.types import Job, JobStatus, Source

# Share of a job's progress bar reached when it enters each state; the
# processing share is spread across transcribed segments.
_STAGE_FLOOR: dict[JobStatus, float] = {
    "idle": 0.0,
    "optimizing": 0.05,
    "uploading": 0.15,
    "processing": 0.2,
}
_SEGMENT_SPAN = 0.75


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    job_id: str
    status: JobStatus | None
    message: str
    segments_done: int | None = None
    segments_total: int | None = None


ProgressListener = Callable[[ProgressEvent], None]


@dataclass(frozen=True, slots=True)
class AggregateProgress:
    total: int
    idle: int
    active: int
    succeeded: int
    failed: int
    fraction: float

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "idle": self.idle,
            "active": self.active,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "fraction": round(self.fraction, 4),
        }


def job_fraction(job: Job) -> float:
    if job.is_terminal:
        return 1.0
    floor = _STAGE_FLOOR[job.status]
    if job.status == "processing" and job.segments_total > 0:
        return floor + _SEGMENT_SPAN * min(job.segments_done, job.segments_total) / job.segments_total
    return floor


def summarize(jobs: Iterable[Job]) -> AggregateProgress:
    items = list(jobs)
    if not items:
        return AggregateProgress(total=0, idle=0, active=0, succeeded=0, failed=0, fraction=1.0)
    return AggregateProgress(
        total=len(items),
        idle=sum(1 for job in items if job.status == "idle"),
        active=sum(1 for job in items if job.is_active),
        succeeded=sum(1 for job in items if job.status == "success"),
        failed=sum(1 for job in items if job.status == "error"),
        fraction=sum(job_fraction(job) for job in items) / len(items),
    )


class JobContext:
    """Handle given to a running job routine.

    All writes go out as ``ProgressEvent`` objects through ``publish``; the
    routine never touches the job collection directly.
    """

    def __init__(
        self,
        job_id: str,
        source: Source,
        publish: Callable[[ProgressEvent], None],
        cancelled: threading.Event,
    ) -> None:
        self.job_id = job_id
        self.source = source
        self._publish = publish
        self._cancelled = cancelled

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise JobCancelled(self.job_id)

    def pause(self, seconds: float) -> None:
        if seconds > 0 and self._cancelled.wait(seconds):
            raise JobCancelled(self.job_id)

    def advance(self, status: JobStatus, message: str) -> None:
        self._publish(ProgressEvent(job_id=self.job_id, status=status, message=message))

    def report(
        self,
        message: str,
        *,
        segments_done: int | None = None,
        segments_total: int | None = None,
    ) -> None:
        self._publish(
            ProgressEvent(
                job_id=self.job_id,
                status=None,
                message=message,
                segments_done=segments_done,
                segments_total=segments_total,
            )
        )
