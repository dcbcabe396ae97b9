from __future__ import annotations

import dataclasses
import itertools
import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable

from transcribe_queue.errors import JobCancelled, error_info
from transcribe_queue.pipeline import JobRunner
from transcribe_queue.progress import AggregateProgress, JobContext, ProgressEvent, ProgressListener, summarize
from transcribe_queue.types import STATUS_ORDER, ErrorInfo, Job, Source, TranscriptionResult

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY_LIMIT = 3


class Scheduler:
    """Owns the job collection and admits idle jobs FIFO up to a concurrency ceiling.

    Each admitted job takes one token from a bounded semaphore and runs on its
    own worker thread; the token is returned after the job's terminal
    transition, whatever the outcome. Every read and write of the job
    collection happens under ``_lock``. Job routines report through
    ``ProgressEvent`` objects which are applied here, appended to an ordered
    log, and handed to listeners outside the lock in that same order.
    """

    def __init__(
        self,
        runner: JobRunner,
        *,
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        self.runner = runner
        self.concurrency_limit = concurrency_limit
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._clock = clock
        self._sequence = itertools.count()
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._delivery_lock = threading.RLock()
        self._slots = threading.BoundedSemaphore(concurrency_limit)
        self._jobs: dict[str, Job] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._workers: dict[str, threading.Thread] = {}
        self._listeners: list[ProgressListener] = []
        self._pending: deque[ProgressEvent] = deque()
        self._closed = False

    def submit(self, source: Source) -> Job:
        return self.submit_many([source])[0]

    def submit_many(self, sources: Iterable[Source]) -> list[Job]:
        created: list[Job] = []
        with self._lock:
            if self._closed:
                raise RuntimeError("Scheduler is closed")
            for source in sources:
                job = Job(
                    id=self._new_id(),
                    source=source,
                    created_at=self._clock(),
                    sequence=next(self._sequence),
                )
                self._jobs[job.id] = job
                created.append(job)
                logger.info("Queued job %s (%s)", job.id, job.source_label)
            self._admit_locked()
            snapshots = [dataclasses.replace(job) for job in created]
        self._deliver()
        return snapshots

    def remove(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                return False
            cancel = self._cancel_events.pop(job_id, None)
            if cancel is not None:
                cancel.set()
            logger.info("Removed job %s in status %s", job_id, job.status)
            self._admit_locked()
            self._changed.notify_all()
        self._deliver()
        return True

    def clear_all(self) -> int:
        with self._lock:
            removed = len(self._jobs)
            for cancel in self._cancel_events.values():
                cancel.set()
            self._jobs.clear()
            self._cancel_events.clear()
            self._changed.notify_all()
        if removed:
            logger.info("Cleared %d job(s)", removed)
        return removed

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return dataclasses.replace(job) if job is not None else None

    def jobs(self) -> list[Job]:
        with self._lock:
            return [dataclasses.replace(job) for job in self._jobs.values()]

    def progress(self) -> AggregateProgress:
        with self._lock:
            return summarize(self._jobs.values())

    @property
    def running_count(self) -> int:
        with self._lock:
            return len(self._workers)

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def wait(self, timeout: float | None = None) -> bool:
        """Block until no job is idle or running. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            while self._workers or (
                not self._closed and any(job.status == "idle" for job in self._jobs.values())
            ):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._changed.wait(remaining)
            return True

    def close(self, timeout_seconds: float = 10.0) -> None:
        with self._lock:
            self._closed = True
            self._changed.notify_all()
            workers = list(self._workers.values())
            for cancel in self._cancel_events.values():
                cancel.set()
        deadline = time.monotonic() + timeout_seconds
        for worker in workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))

    def _new_id(self) -> str:
        job_id = self._id_factory()
        while job_id in self._jobs or job_id in self._workers:
            job_id = self._id_factory()
        return job_id

    def _admit_locked(self) -> None:
        if self._closed:
            return
        while True:
            idle = [job for job in self._jobs.values() if job.status == "idle"]
            if not idle:
                return
            if not self._slots.acquire(blocking=False):
                return
            job = min(idle, key=lambda item: (item.created_at, item.sequence))
            job.status = "optimizing"
            job.progress_message = "Starting..."
            cancel = threading.Event()
            self._cancel_events[job.id] = cancel
            ctx = JobContext(job.id, job.source, self._publish, cancel)
            worker = threading.Thread(
                target=self._execute,
                args=(ctx,),
                name=f"transcribe-job-{job.id[:8]}",
                daemon=True,
            )
            try:
                worker.start()
            except RuntimeError:
                job.status = "idle"
                job.progress_message = "Waiting..."
                self._cancel_events.pop(job.id, None)
                self._slots.release()
                logger.exception("Could not start a worker for job %s", job.id)
                return
            self._workers[job.id] = worker
            self._pending.append(ProgressEvent(job_id=job.id, status=job.status, message=job.progress_message))
            logger.info("Admitted job %s (%d/%d slots busy)", job.id, len(self._workers), self.concurrency_limit)

    def _execute(self, ctx: JobContext) -> None:
        job_id = ctx.job_id
        result: TranscriptionResult | None = None
        failure: ErrorInfo | None = None
        try:
            logger.info("Processing job %s", job_id)
            result = self.runner.run(ctx)
            logger.info("Completed job %s", job_id)
        except JobCancelled:
            logger.info("Job %s stopped after removal", job_id)
        except Exception as exc:  # pylint: disable=broad-except
            failure = error_info(exc)
            if failure.kind == "internal":
                logger.exception("Job %s failed: %s", job_id, failure.message)
            else:
                logger.warning("Job %s failed (%s): %s", job_id, failure.kind, failure.message)
        finally:
            with self._lock:
                self._finish_locked(job_id, result, failure)
                self._workers.pop(job_id, None)
                self._cancel_events.pop(job_id, None)
                self._slots.release()
                self._admit_locked()
                self._changed.notify_all()
            self._deliver()

    def _finish_locked(
        self,
        job_id: str,
        result: TranscriptionResult | None,
        failure: ErrorInfo | None,
    ) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.is_terminal:
            return
        if result is not None:
            job.status = "success"
            job.transcript = result
            job.error = None
            job.progress_message = "Done"
        else:
            job.status = "error"
            job.transcript = None
            job.error = failure or ErrorInfo(kind="internal", message="Job stopped without a result")
            job.progress_message = "Failed"
        self._pending.append(ProgressEvent(job_id=job.id, status=job.status, message=job.progress_message))

    def _publish(self, event: ProgressEvent) -> None:
        with self._lock:
            self._apply_locked(event)
        self._deliver()

    def _apply_locked(self, event: ProgressEvent) -> None:
        job = self._jobs.get(event.job_id)
        if job is None or job.is_terminal:
            return
        if event.status is not None:
            if event.status in ("success", "error") or STATUS_ORDER[event.status] < STATUS_ORDER[job.status]:
                logger.debug("Ignoring transition %s -> %s for job %s", job.status, event.status, job.id)
                return
            job.status = event.status
        job.progress_message = event.message
        if event.segments_total is not None:
            job.segments_total = event.segments_total
        if event.segments_done is not None:
            job.segments_done = event.segments_done
        self._changed.notify_all()
        self._pending.append(
            ProgressEvent(
                job_id=job.id,
                status=job.status,
                message=job.progress_message,
                segments_done=job.segments_done,
                segments_total=job.segments_total,
            )
        )

    def _deliver(self) -> None:
        with self._delivery_lock:
            while True:
                with self._lock:
                    if not self._pending:
                        return
                    event = self._pending.popleft()
                    listeners = list(self._listeners)
                for listener in listeners:
                    try:
                        listener(event)
                    except Exception:  # pylint: disable=broad-except
                        logger.exception("Progress listener failed for job %s", event.job_id)
