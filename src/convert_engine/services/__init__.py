"""Convert Engine services."""

from convert_engine.services.ffmpeg import FFmpegService, VideoInfo, build_conversion_args
from convert_engine.services.progress import parse_progress
from convert_engine.services.supervisor import ProcessOutcome, ProcessSupervisor, SupervisorHandle

__all__ = [
    "FFmpegService",
    "VideoInfo",
    "build_conversion_args",
    "parse_progress",
    "ProcessOutcome",
    "ProcessSupervisor",
    "SupervisorHandle",
]
