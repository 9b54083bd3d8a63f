"""Supervision of external FFmpeg processes, one per active job."""

import asyncio
import codecs
import logging
import os
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, List, Optional

from convert_engine.models.job import ConversionError, ConversionJob, ConversionProgress
from convert_engine.services.progress import is_progress_line, parse_progress

logger = logging.getLogger(__name__)

SPAWN_ERROR = "FFMPEG_SPAWN_ERROR"
TIMEOUT_ERROR = "FFMPEG_TIMEOUT"
STALLED_ERROR = "FFMPEG_STALLED"
PROCESSING_ERROR = "PROCESSING_ERROR"

READ_CHUNK_SIZE = 4096

SpawnFn = Callable[[List[str]], Awaitable[Any]]
ProgressCallback = Callable[[str, ConversionProgress], None]


@dataclass
class ProcessOutcome:
    """How a supervised process ended."""
    success: bool
    elapsed: float
    return_code: Optional[int] = None
    output_size: Optional[int] = None
    cancelled: bool = False
    error: Optional[ConversionError] = None


ExitCallback = Callable[[str, ProcessOutcome], None]


@dataclass
class SupervisorHandle:
    """Tracks one supervised run."""
    job_id: str
    argv: List[str]
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    process: Optional[Any] = field(default=None, repr=False)
    cancel_requested: bool = False
    _terminator: Optional[asyncio.Task] = field(default=None, repr=False)


async def spawn_ffmpeg(argv: List[str]) -> asyncio.subprocess.Process:
    """Start FFmpeg with stderr piped; stdout is discarded so it never blocks."""
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE
    )


def _split_complete_lines(buffer: str):
    """Split off everything up to the last line terminator."""
    idx = max(buffer.rfind("\n"), buffer.rfind("\r"))
    if idx == -1:
        return "", buffer
    return buffer[:idx + 1], buffer[idx + 1:]


class ProcessSupervisor:
    """Starts, watches and stops encoder processes.

    The supervisor knows nothing about the global concurrency limit. It
    reports through the two callbacks handed to ``run`` and calls
    ``on_exit`` exactly once per run, whatever happens.
    """

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        spawn: Optional[SpawnFn] = None,
        kill_timeout: float = 5.0,
        max_runtime: Optional[float] = None,
        stall_timeout: Optional[float] = None,
        diagnostic_lines: int = 20,
    ):
        self.ffmpeg_path = ffmpeg_path
        self._spawn = spawn or spawn_ffmpeg
        self.kill_timeout = kill_timeout
        self.max_runtime = max_runtime or None
        self.stall_timeout = stall_timeout or None
        self.diagnostic_lines = diagnostic_lines

    def run(
        self,
        job: ConversionJob,
        args: List[str],
        on_progress: ProgressCallback,
        on_exit: ExitCallback,
    ) -> SupervisorHandle:
        """Start supervising ``job``. Must be called from a running event loop."""
        handle = SupervisorHandle(job_id=job.id, argv=[self.ffmpeg_path, *args])
        progress = job.progress or ConversionProgress(total_time=job.total_time or 0.0)
        handle.task = asyncio.create_task(
            self._supervise(handle, job.output_path, progress, on_progress, on_exit)
        )
        return handle

    def cancel(self, handle: SupervisorHandle) -> None:
        """Request termination. The exit is still reported through on_exit."""
        handle.cancel_requested = True
        process = handle.process
        if process is None or process.returncode is not None:
            return
        if handle._terminator is None or handle._terminator.done():
            handle._terminator = asyncio.create_task(self._terminate(handle.job_id, process))

    async def _terminate(self, job_id: str, process: Any) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
        except asyncio.TimeoutError:
            logger.warning("FFmpeg for job %s ignored terminate, killing", job_id)
            self._kill(process)

    @staticmethod
    def _kill(process: Any) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            pass

    async def _supervise(
        self,
        handle: SupervisorHandle,
        output_path: str,
        progress: ConversionProgress,
        on_progress: ProgressCallback,
        on_exit: ExitCallback,
    ) -> None:
        started = time.monotonic()

        if handle.cancel_requested:
            on_exit(handle.job_id, ProcessOutcome(success=False, elapsed=0.0, cancelled=True))
            return

        logger.info("Running FFmpeg for job %s: %s", handle.job_id, " ".join(handle.argv[:3]) + "...")

        try:
            process = await self._spawn(handle.argv)
        except (OSError, ValueError) as e:
            logger.error("FFmpeg spawn failed for job %s: %s", handle.job_id, e)
            on_exit(handle.job_id, ProcessOutcome(
                success=False,
                elapsed=time.monotonic() - started,
                cancelled=handle.cancel_requested,
                error=ConversionError(code=SPAWN_ERROR, message=str(e) or "FFmpeg could not be started"),
            ))
            return

        handle.process = process
        if handle.cancel_requested:
            self.cancel(handle)

        diagnostics: Deque[str] = deque(maxlen=self.diagnostic_lines)
        try:
            failure = await self._pump(handle, process, started, progress, on_progress, diagnostics)
            return_code = await process.wait()
        except asyncio.CancelledError:
            self._kill(process)
            raise
        except Exception as e:
            logger.exception("Supervision of job %s failed: %s", handle.job_id, e)
            self._kill(process)
            failure = ConversionError(code=PROCESSING_ERROR, message=str(e) or type(e).__name__)
            return_code = await process.wait()

        on_exit(handle.job_id, self._outcome(
            handle, output_path, return_code, time.monotonic() - started, failure, diagnostics
        ))

    async def _pump(
        self,
        handle: SupervisorHandle,
        process: Any,
        started: float,
        progress: ConversionProgress,
        on_progress: ProgressCallback,
        diagnostics: Deque[str],
    ) -> Optional[ConversionError]:
        """Stream stderr into the parser until EOF, a timeout or a stall."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        deadline = started + self.max_runtime if self.max_runtime else None

        while True:
            timeout = self.stall_timeout
            hits_deadline = False
            if deadline is not None:
                remaining = max(0.0, deadline - time.monotonic())
                hits_deadline = timeout is None or remaining <= timeout
                timeout = remaining if hits_deadline else timeout

            try:
                data = await asyncio.wait_for(process.stderr.read(READ_CHUNK_SIZE), timeout=timeout)
            except asyncio.TimeoutError:
                if hits_deadline:
                    logger.error("FFmpeg timeout for job %s after %.0fs, killing process", handle.job_id, self.max_runtime)
                    error = ConversionError(code=TIMEOUT_ERROR, message=f"FFmpeg exceeded {self.max_runtime:.0f}s")
                else:
                    logger.error("FFmpeg stalled for job %s at %.1f%%, killing process", handle.job_id, progress.percentage)
                    error = ConversionError(code=STALLED_ERROR, message=f"No FFmpeg output for {self.stall_timeout:.0f}s")
                self._kill(process)
                return error

            if not data:
                break

            buffer += decoder.decode(data)
            complete, buffer = _split_complete_lines(buffer)
            if complete:
                progress = self._consume(handle.job_id, complete, progress, on_progress, diagnostics)

        buffer += decoder.decode(b"", final=True)
        if buffer:
            self._consume(handle.job_id, buffer, progress, on_progress, diagnostics)
        return None

    @staticmethod
    def _consume(
        job_id: str,
        text: str,
        progress: ConversionProgress,
        on_progress: ProgressCallback,
        diagnostics: Deque[str],
    ) -> ConversionProgress:
        for line in text.replace("\r", "\n").split("\n"):
            line = line.strip()
            if line and not is_progress_line(line):
                diagnostics.append(line)

        snapshot = parse_progress(text, progress)
        if snapshot is None:
            return progress
        on_progress(job_id, snapshot)
        return snapshot

    def _outcome(
        self,
        handle: SupervisorHandle,
        output_path: str,
        return_code: Optional[int],
        elapsed: float,
        failure: Optional[ConversionError],
        diagnostics: Deque[str],
    ) -> ProcessOutcome:
        trailing = "\n".join(diagnostics) or None

        if handle.cancel_requested:
            logger.info("FFmpeg for job %s stopped after cancellation (code %s)", handle.job_id, return_code)
            return ProcessOutcome(success=False, elapsed=elapsed, return_code=return_code, cancelled=True)

        if failure is not None:
            failure.exit_code = return_code
            failure.ffmpeg_output = trailing
            return ProcessOutcome(success=False, elapsed=elapsed, return_code=return_code, error=failure)

        if return_code == 0:
            try:
                output_size = os.path.getsize(output_path)
            except OSError:
                output_size = None
            logger.info("FFmpeg finished job %s in %.1fs", handle.job_id, elapsed)
            return ProcessOutcome(success=True, elapsed=elapsed, return_code=0, output_size=output_size)

        logger.error("FFmpeg failed for job %s with exit code %s", handle.job_id, return_code)
        return ProcessOutcome(
            success=False,
            elapsed=elapsed,
            return_code=return_code,
            error=ConversionError(
                code=f"FFMPEG_EXIT_{return_code}",
                message=f"FFmpeg process failed with exit code {return_code}",
                details=diagnostics[-1] if diagnostics else None,
                exit_code=return_code,
                ffmpeg_output=trailing,
            ),
        )
