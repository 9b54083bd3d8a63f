"""Job endpoints."""

import logging
import os
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from convert_engine.api.v1.deps import get_ffmpeg, get_orchestrator, get_settings
from convert_engine.core.config import Settings
from convert_engine.core.errors import InspectError, JobNotFoundError
from convert_engine.core.jobs import ConversionOrchestrator
from convert_engine.models.job import ConversionSettings, JobStatus, estimate_output_size
from convert_engine.services.ffmpeg import FFmpegService

logger = logging.getLogger(__name__)
router = APIRouter()


class SubmitJobRequest(BaseModel):
    input_path: str
    output_path: str
    settings: ConversionSettings = Field(default_factory=ConversionSettings)
    priority: int = 0
    total_time: Optional[float] = None


class ConcurrencyRequest(BaseModel):
    limit: int


@router.post("", status_code=201)
async def submit_job(
    request: SubmitJobRequest,
    orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
    ffmpeg: FFmpegService = Depends(get_ffmpeg),
    settings: Settings = Depends(get_settings),
) -> dict:
    """Queue a conversion."""
    total_time = request.total_time

    # Seed the duration so progress can be expressed as a percentage
    if total_time is None and settings.PROBE_ON_SUBMIT and os.path.isfile(request.input_path):
        try:
            info = await ffmpeg.get_video_info(request.input_path)
            total_time = info.duration or None
        except InspectError as e:
            logger.warning("Could not probe %s: %s", request.input_path, e.message)

    job_id = await orchestrator.submit(
        request.input_path,
        request.output_path,
        request.settings,
        priority=request.priority,
        total_time=total_time,
    )
    return {
        "success": True,
        "data": {
            "job_id": job_id,
            "estimated_size": estimate_output_size(request.settings, total_time),
        },
    }


@router.get("")
async def list_jobs(
    status: Optional[List[JobStatus]] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
) -> dict:
    """List jobs, newest first."""
    jobs = orchestrator.list_jobs(status=status, limit=limit)
    return {"success": True, "data": [job.to_dict() for job in jobs]}


@router.delete("")
async def clear_old_jobs(
    older_than_days: float = Query(7.0, ge=0),
    orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Remove completed and failed jobs older than the given age."""
    removed = orchestrator.clear_older_than(older_than_days * 24 * 60 * 60)
    return {"success": True, "data": {"removed": removed}}


@router.get("/stats")
async def job_stats(orchestrator: ConversionOrchestrator = Depends(get_orchestrator)) -> dict:
    return {"success": True, "data": orchestrator.get_statistics()}


@router.get("/concurrency")
async def get_concurrency(orchestrator: ConversionOrchestrator = Depends(get_orchestrator)) -> dict:
    return {"success": True, "data": {"limit": orchestrator.concurrency_limit}}


@router.put("/concurrency")
async def set_concurrency(
    request: ConcurrencyRequest,
    orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Change how many conversions may run at once."""
    applied = orchestrator.set_concurrency_limit(request.limit)
    return {"success": True, "data": {"limit": applied}}


@router.get("/{job_id}")
async def get_job(job_id: str, orchestrator: ConversionOrchestrator = Depends(get_orchestrator)) -> dict:
    """Get job status and progress."""
    job = orchestrator.get_job(job_id)
    if not job:
        raise JobNotFoundError(job_id)

    return {"success": True, "data": job.to_dict()}


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str, orchestrator: ConversionOrchestrator = Depends(get_orchestrator)) -> dict:
    """Cancel a job."""
    orchestrator.cancel(job_id)
    return {"success": True, "data": {"cancelled": True}}


@router.post("/{job_id}/retry")
async def retry_job(job_id: str, orchestrator: ConversionOrchestrator = Depends(get_orchestrator)) -> dict:
    """Resubmit a failed job."""
    new_job_id = await orchestrator.retry(job_id)
    return {"success": True, "data": {"job_id": new_job_id, "retry_of": job_id}}
