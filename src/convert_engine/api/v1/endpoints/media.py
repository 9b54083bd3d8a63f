"""Media inspection endpoints."""

import os

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from convert_engine.api.v1.deps import get_ffmpeg
from convert_engine.core.errors import InspectError
from convert_engine.services.ffmpeg import FFmpegService

router = APIRouter()


class ProbeRequest(BaseModel):
    path: str


@router.post("/probe")
async def probe_media(request: ProbeRequest, ffmpeg: FFmpegService = Depends(get_ffmpeg)) -> dict:
    """Read duration, resolution and codecs of a media file."""
    if not os.path.isfile(request.path):
        raise InspectError(f"File not found: {request.path}")

    info = await ffmpeg.get_video_info(request.path)
    return {"success": True, "data": info.to_dict()}
