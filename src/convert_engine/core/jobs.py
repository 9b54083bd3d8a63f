"""Conversion job orchestrator: job table, priority wait list and scheduling."""

import asyncio
import dataclasses
import heapq
import itertools
import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import ValidationError

from convert_engine.core.errors import (
    JobNotCancellableError,
    JobNotFoundError,
    JobNotRetryableError,
    JobValidationError,
)
from convert_engine.core.events import EventBus, EventKind, JobEvent, ProgressEvent, QueueEvent
from convert_engine.models.job import (
    ConversionError,
    ConversionJob,
    ConversionProgress,
    ConversionResult,
    ConversionSettings,
    JobStatus,
    utcnow,
)
from convert_engine.services.ffmpeg import build_conversion_args
from convert_engine.services.supervisor import (
    PROCESSING_ERROR,
    ProcessOutcome,
    ProcessSupervisor,
    SupervisorHandle,
)

logger = logging.getLogger(__name__)

StatusFilter = Union[JobStatus, str, Iterable[Union[JobStatus, str]], None]

_TERMINAL_EVENTS = {
    JobStatus.COMPLETED: EventKind.JOB_COMPLETED,
    JobStatus.FAILED: EventKind.JOB_FAILED,
    JobStatus.CANCELLED: EventKind.JOB_CANCELLED,
}


class ConversionOrchestrator:
    """Owns every conversion job and decides which ones run.

    All job mutations happen on the event loop in code paths without an
    ``await`` between reading and writing state. Supervisor callbacks only
    post messages to an inbox; a single dispatch task applies them.
    Nothing is admitted before ``start()``.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        events: EventBus,
        max_concurrent_jobs: int = 2,
        min_concurrent_jobs: int = 1,
        concurrency_ceiling: int = 8,
        default_max_retries: int = 3,
    ):
        self._supervisor = supervisor
        self.events = events
        self._min_concurrent_jobs = min_concurrent_jobs
        self._concurrency_ceiling = concurrency_ceiling
        self._max_concurrent_jobs = self._clamp(max_concurrent_jobs)
        self._default_max_retries = default_max_retries

        self._jobs: Dict[str, ConversionJob] = {}
        self._sequence_of: Dict[str, int] = {}
        self._sequence = itertools.count()
        self._wait_list: List[Tuple[int, int, str]] = []
        self._handles: Dict[str, SupervisorHandle] = {}
        self._cancel_requested: Set[str] = set()

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._dispatcher: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._running = False
        self._scheduling = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the dispatch loop and admit whatever is already queued."""
        if self._running:
            return

        self._running = True
        self._dispatcher = asyncio.create_task(self._dispatch())
        logger.info("Conversion orchestrator started (max %d concurrent jobs)", self._max_concurrent_jobs)
        self._schedule()

    async def stop(self) -> None:
        """Stop admitting, terminate running encoders and release subscribers."""
        if not self._running and self._dispatcher is None:
            return

        self._running = False

        for job_id, handle in list(self._handles.items()):
            self._cancel_requested.add(job_id)
            self._supervisor.cancel(handle)

        tasks = [handle.task for handle in self._handles.values() if handle.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None

        # Exits posted after the dispatcher stopped
        while not self._inbox.empty():
            self._apply(*self._inbox.get_nowait())

        self.events.clear()
        logger.info("Conversion orchestrator stopped")

    async def join(self) -> None:
        """Wait until no job is queued or processing."""
        await self._idle.wait()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def submit(
        self,
        input_path: str,
        output_path: str,
        settings: Union[ConversionSettings, Dict[str, Any], None] = None,
        priority: int = 0,
        total_time: Optional[float] = None,
    ) -> str:
        """Validate and enqueue a conversion. Returns the new job id.

        Raises JobValidationError without creating a job when the input is
        missing, the output directory cannot be created, the destination
        already exists (and ``-y`` is not in ``custom_args``) or the settings
        are invalid.
        """
        conversion_settings = self._coerce_settings(settings)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, self._validate_paths, input_path, output_path, conversion_settings.allows_overwrite
        )

        job = ConversionJob(
            input_path=input_path,
            output_path=output_path,
            settings=conversion_settings,
            priority=priority,
            total_time=total_time,
            max_retries=self._default_max_retries,
        )
        self._admit(job)
        logger.info("Created conversion job %s (priority %d): %s", job.id, priority, os.path.basename(input_path))
        return job.id

    def cancel(self, job_id: str) -> None:
        """Cancel a pending, queued or processing job.

        Jobs that never started are cancelled immediately. A processing job
        reaches ``cancelled`` once its encoder has actually exited.
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        if not job.can_cancel:
            raise JobNotCancellableError(f"Cannot cancel job with status: {job.status.value}")

        if job.status == JobStatus.PROCESSING:
            self._cancel_requested.add(job_id)
            handle = self._handles.get(job_id)
            if handle is not None:
                self._supervisor.cancel(handle)
            logger.info("Cancellation requested for running job %s", job_id)
        else:
            self._remove_from_wait_list(job_id)
            self._finish(job, JobStatus.CANCELLED, ConversionResult(success=False))
            self._publish_queue()
            logger.info("Cancelled job %s before it started", job_id)

        self._schedule()

    async def retry(self, job_id: str) -> str:
        """Resubmit a failed job as a new job. Returns the new job id."""
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        if not job.can_retry:
            raise JobNotRetryableError(
                f"Job {job_id} cannot be retried (status {job.status.value}, "
                f"attempt {job.retry_count} of {job.max_retries})"
            )

        # The failed attempt may have left partial output behind
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._validate_paths, job.input_path, job.output_path, True)

        retry_job = ConversionJob(
            input_path=job.input_path,
            output_path=job.output_path,
            settings=job.settings.model_copy(deep=True),
            priority=job.priority,
            total_time=job.total_time,
            retryable=job.retryable,
            retry_count=job.retry_count + 1,
            max_retries=job.max_retries,
            retry_of=job.id,
        )
        self._admit(retry_job)
        logger.info("Retrying job %s as %s (attempt %d)", job_id, retry_job.id, retry_job.retry_count)
        return retry_job.id

    def get_job(self, job_id: str) -> Optional[ConversionJob]:
        job = self._jobs.get(job_id)
        return job.snapshot() if job else None

    def list_jobs(self, status: StatusFilter = None, limit: Optional[int] = None) -> List[ConversionJob]:
        """Jobs newest first, optionally filtered by status and limited."""
        jobs = self._sorted_jobs()

        if status is not None:
            if isinstance(status, str):
                statuses = {JobStatus(status)}
            else:
                statuses = {JobStatus(s) for s in status}
            if statuses:
                jobs = [job for job in jobs if job.status in statuses]

        if limit is not None and limit > 0:
            jobs = jobs[:limit]

        return [job.snapshot() for job in jobs]

    @property
    def concurrency_limit(self) -> int:
        return self._max_concurrent_jobs

    def set_concurrency_limit(self, limit: int) -> int:
        """Clamp and apply a new limit. Running jobs are never preempted."""
        self._max_concurrent_jobs = self._clamp(limit)
        logger.info("Concurrency limit set to %d", self._max_concurrent_jobs)
        self._schedule()
        return self._max_concurrent_jobs

    def clear_older_than(self, age: Union[timedelta, float], now: Optional[datetime] = None) -> int:
        """Remove completed and failed jobs that finished before ``now - age``."""
        if not isinstance(age, timedelta):
            age = timedelta(seconds=age)
        cutoff = (now or utcnow()) - age

        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED)
            and job.completed_at is not None
            and job.completed_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
            del self._sequence_of[job_id]

        if expired:
            logger.info("Cleared %d finished jobs older than %s", len(expired), age)
            self._publish_queue()
        return len(expired)

    def get_statistics(self) -> Dict[str, int]:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status] += 1

        return {
            "total_jobs": len(self._jobs),
            "completed_jobs": counts[JobStatus.COMPLETED],
            "failed_jobs": counts[JobStatus.FAILED],
            "cancelled_jobs": counts[JobStatus.CANCELLED],
            "active_jobs": counts[JobStatus.PROCESSING],
            "queued_jobs": counts[JobStatus.PENDING] + counts[JobStatus.QUEUED],
        }

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @property
    def active_count(self) -> int:
        return len(self._handles)

    def _admit(self, job: ConversionJob) -> None:
        self._jobs[job.id] = job
        sequence = next(self._sequence)
        self._sequence_of[job.id] = sequence

        heapq.heappush(self._wait_list, (-job.priority, sequence, job.id))
        job.status = JobStatus.QUEUED
        self._idle.clear()

        self._publish_queue()
        self._schedule()

    def _schedule(self) -> None:
        """Admit queued jobs, best priority first, into free slots."""
        if self._running and not self._scheduling:
            self._scheduling = True
            admitted = 0
            try:
                while self._wait_list and self.active_count < self._max_concurrent_jobs:
                    _, _, job_id = heapq.heappop(self._wait_list)
                    job = self._jobs.get(job_id)
                    if job is None or job.status != JobStatus.QUEUED:
                        continue
                    self._start_job(job)
                    admitted += 1
            finally:
                self._scheduling = False

            if admitted:
                self._publish_queue()

        self._update_idle()

    def _start_job(self, job: ConversionJob) -> None:
        job.status = JobStatus.PROCESSING
        job.started_at = utcnow()
        job.progress = ConversionProgress(total_time=job.total_time or 0.0, stage="Starting conversion...")
        self.events.publish(EventKind.JOB_STARTED, JobEvent(job.snapshot()))

        try:
            args = build_conversion_args(job.input_path, job.output_path, job.settings)
            handle = self._supervisor.run(job, args, self._on_progress, self._on_exit)
            self._handles[job.id] = handle
        except Exception as e:
            logger.exception("Could not start job %s: %s", job.id, e)
            self._finish(job, JobStatus.FAILED, ConversionResult(
                success=False,
                error=ConversionError(code=PROCESSING_ERROR, message=str(e) or type(e).__name__),
            ))
            return

        # A job-started listener may already have cancelled the job
        if job.id in self._cancel_requested:
            self._supervisor.cancel(handle)

        logger.info("Job %s started (%d/%d slots)", job.id, self.active_count, self._max_concurrent_jobs)

    def _remove_from_wait_list(self, job_id: str) -> None:
        self._wait_list = [entry for entry in self._wait_list if entry[2] != job_id]
        heapq.heapify(self._wait_list)

    def _update_idle(self) -> None:
        if self._wait_list or self._handles:
            self._idle.clear()
        else:
            self._idle.set()

    # ------------------------------------------------------------------
    # Supervisor messages
    # ------------------------------------------------------------------

    def _on_progress(self, job_id: str, progress: ConversionProgress) -> None:
        self._inbox.put_nowait(("progress", job_id, progress))

    def _on_exit(self, job_id: str, outcome: ProcessOutcome) -> None:
        self._inbox.put_nowait(("exit", job_id, outcome))

    async def _dispatch(self) -> None:
        """Single writer for everything the supervisor reports."""
        while True:
            kind, job_id, data = await self._inbox.get()
            self._apply(kind, job_id, data)

    def _apply(self, kind: str, job_id: str, data: Any) -> None:
        try:
            if kind == "progress":
                self._apply_progress(job_id, data)
            else:
                self._apply_exit(job_id, data)
        except Exception as e:
            logger.exception("Failed to apply %s for job %s: %s", kind, job_id, e)

    def _apply_progress(self, job_id: str, progress: ConversionProgress) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return

        job.progress = progress
        self.events.publish(EventKind.JOB_PROGRESS, ProgressEvent(job_id, dataclasses.replace(progress)))

    def _apply_exit(self, job_id: str, outcome: ProcessOutcome) -> None:
        self._handles.pop(job_id, None)
        cancelled = job_id in self._cancel_requested or outcome.cancelled
        self._cancel_requested.discard(job_id)

        job = self._jobs.get(job_id)
        if job is not None and job.status == JobStatus.PROCESSING:
            if cancelled:
                self._finish(job, JobStatus.CANCELLED, ConversionResult(
                    success=False,
                    conversion_time=outcome.elapsed,
                ))
            elif outcome.success:
                self._finish(job, JobStatus.COMPLETED, ConversionResult(
                    success=True,
                    conversion_time=outcome.elapsed,
                    output_path=job.output_path,
                    output_size=outcome.output_size,
                ))
            else:
                error = outcome.error or ConversionError(
                    code=f"FFMPEG_EXIT_{outcome.return_code}",
                    message="FFmpeg process failed",
                    exit_code=outcome.return_code,
                )
                self._finish(job, JobStatus.FAILED, ConversionResult(
                    success=False,
                    conversion_time=outcome.elapsed,
                    error=error,
                ))
            self._publish_queue()

        self._schedule()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _finish(self, job: ConversionJob, status: JobStatus, result: ConversionResult) -> None:
        """Move a job into a terminal state and announce it."""
        job.status = status
        job.completed_at = utcnow()
        job.progress = None
        job.result = result

        if status == JobStatus.FAILED and result.error is not None:
            logger.error("Job %s failed: %s (%s)", job.id, result.error.message, result.error.code)
        else:
            logger.info("Job %s %s", job.id, status.value)

        self.events.publish(_TERMINAL_EVENTS[status], JobEvent(job.snapshot()))

    def _publish_queue(self) -> None:
        snapshot = tuple(job.snapshot() for job in self._sorted_jobs())
        self.events.publish(EventKind.QUEUE_UPDATED, QueueEvent(snapshot))

    def _sorted_jobs(self) -> List[ConversionJob]:
        return sorted(
            self._jobs.values(),
            key=lambda job: (job.created_at, self._sequence_of[job.id]),
            reverse=True,
        )

    def _clamp(self, limit: int) -> int:
        return max(self._min_concurrent_jobs, min(self._concurrency_ceiling, int(limit)))

    @staticmethod
    def _coerce_settings(settings: Union[ConversionSettings, Dict[str, Any], None]) -> ConversionSettings:
        if isinstance(settings, ConversionSettings):
            return settings.model_copy(deep=True)
        try:
            return ConversionSettings.model_validate(settings or {})
        except ValidationError as e:
            raise JobValidationError(
                f"Invalid conversion settings: {e.errors()[0].get('msg', e)}",
                code=JobValidationError.INVALID_SETTINGS,
            ) from e

    @staticmethod
    def _validate_paths(input_path: str, output_path: str, allow_overwrite: bool) -> None:
        """Filesystem checks for a submission. Runs in the default executor."""
        if not os.path.isfile(input_path):
            raise JobValidationError("Input file does not exist", code=JobValidationError.INPUT_NOT_FOUND)

        if os.path.abspath(input_path) == os.path.abspath(output_path):
            raise JobValidationError(
                "Output path must differ from the input path",
                code=JobValidationError.DESTINATION_EXISTS,
            )

        # Nothing is created until the nearest existing ancestor is known to be usable
        output_dir = os.path.dirname(os.path.abspath(output_path))
        existing = output_dir
        while not os.path.exists(existing):
            existing = os.path.dirname(existing)

        if not os.path.isdir(existing) or not os.access(existing, os.W_OK):
            raise JobValidationError(
                "Output directory is not writable",
                code=JobValidationError.OUTPUT_DIR_UNAVAILABLE,
            )

        if existing != output_dir:
            try:
                os.makedirs(output_dir, exist_ok=True)
            except OSError as e:
                raise JobValidationError(
                    f"Cannot create output directory: {e}",
                    code=JobValidationError.OUTPUT_DIR_UNAVAILABLE,
                ) from e

        if os.path.exists(output_path) and not allow_overwrite:
            raise JobValidationError("Output file already exists", code=JobValidationError.DESTINATION_EXISTS)
