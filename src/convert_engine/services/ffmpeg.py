"""FFmpeg service: conversion arguments, media probing and capability checks."""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from convert_engine.core.errors import InspectError
from convert_engine.models.job import ConversionSettings, get_quality_preset

logger = logging.getLogger(__name__)

VIDEO_CODECS = {
    "webm": "libvpx-vp9",
}
DEFAULT_VIDEO_CODEC = "libx264"
DEFAULT_AUDIO_CODEC = "aac"
REQUIRED_ENCODERS = (DEFAULT_VIDEO_CODEC, *VIDEO_CODECS.values(), DEFAULT_AUDIO_CODEC)

_RESOLUTION_RE = re.compile(r"^(\d+)x(\d+)$")


def _format_number(value: float) -> str:
    """Render 30.0 as '30' and 29.97 as '29.97' so argument lists stay stable."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def resolve_settings(settings: ConversionSettings) -> Dict[str, Any]:
    """Quality preset overridden field by field by explicit settings."""
    effective = get_quality_preset(settings.quality)
    effective.update(settings.model_dump(exclude_none=True))
    return effective


def build_conversion_args(input_path: str, output_path: str, settings: ConversionSettings) -> List[str]:
    """Build the ordered FFmpeg argument list for one conversion.

    The binary itself is not included. Pure function: equal inputs always
    produce equal lists.
    """
    effective = resolve_settings(settings)
    args = ["-i", input_path]

    args.extend(["-c:v", VIDEO_CODECS.get(effective["format"], DEFAULT_VIDEO_CODEC)])

    if effective.get("bitrate"):
        args.extend(["-b:v", str(effective["bitrate"])])

    resolution = effective.get("resolution")
    if resolution:
        match = _RESOLUTION_RE.match(resolution)
        if match and effective["maintain_aspect_ratio"]:
            width, height = match.groups()
            args.extend([
                "-vf",
                f"scale={width}:{height}:force_original_aspect_ratio=decrease:force_divisible_by=2",
            ])
        else:
            args.extend(["-s", resolution])

    if effective.get("frame_rate"):
        args.extend(["-r", _format_number(effective["frame_rate"])])

    args.extend(["-c:a", effective.get("audio_codec") or DEFAULT_AUDIO_CODEC])

    if effective.get("audio_bitrate"):
        args.extend(["-b:a", str(effective["audio_bitrate"])])

    # Trim window: start offset plus a duration, never an absolute end
    start_time = effective.get("start_time")
    end_time = effective.get("end_time")
    if start_time is not None:
        args.extend(["-ss", _format_number(start_time)])
        if end_time is not None:
            args.extend(["-t", _format_number(end_time - start_time)])
    elif end_time is not None:
        args.extend(["-t", _format_number(end_time)])

    if effective.get("custom_args"):
        args.extend(effective["custom_args"])

    args.extend(["-progress", "pipe:2", "-y", output_path])
    return args


@dataclass
class VideoInfo:
    """Metadata returned by the inspect probe."""
    duration: float
    width: int
    height: int
    frame_rate: float
    bitrate: int
    video_codec: Optional[str]
    audio_codec: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration": self.duration,
            "width": self.width,
            "height": self.height,
            "frame_rate": self.frame_rate,
            "bitrate": self.bitrate,
            "video_codec": self.video_codec,
            "audio_codec": self.audio_codec,
        }


def parse_probe_output(probe_data: Dict[str, Any]) -> VideoInfo:
    """Extract a VideoInfo from ffprobe's JSON document."""
    video_stream = None
    audio_stream = None

    for stream in probe_data.get("streams", []):
        if stream.get("codec_type") == "video" and video_stream is None:
            video_stream = stream
        elif stream.get("codec_type") == "audio" and audio_stream is None:
            audio_stream = stream

    if not video_stream:
        raise InspectError("No video stream found")

    format_info = probe_data.get("format", {})

    # Calculate duration
    duration = float(format_info.get("duration") or 0)
    if duration == 0 and video_stream.get("duration"):
        duration = float(video_stream["duration"])

    # Calculate FPS
    frame_rate = 0.0
    if video_stream.get("r_frame_rate"):
        try:
            num, den = map(int, video_stream["r_frame_rate"].split("/"))
            if den > 0:
                frame_rate = num / den
        except ValueError:
            logger.debug("Unreadable frame rate %r", video_stream["r_frame_rate"])

    return VideoInfo(
        duration=duration,
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        frame_rate=frame_rate,
        bitrate=int(format_info.get("bit_rate") or 0),
        video_codec=video_stream.get("codec_name"),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
    )


class FFmpegService:
    """Probing and capability checks against the installed FFmpeg."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe"):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.version: Optional[str] = None
        self.available_encoders: List[str] = []
        self._initialized = False

    async def check_availability(self) -> bool:
        """Check if FFmpeg is available and record its encoders."""
        if self._initialized:
            return self.version is not None

        try:
            proc = await asyncio.create_subprocess_exec(
                self.ffmpeg_path, "-version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
            stdout, _ = await proc.communicate()

            if proc.returncode != 0:
                return False

            match = re.search(r"ffmpeg version (\S+)", stdout.decode(errors="ignore"))
            if match:
                self.version = match.group(1)

            proc = await asyncio.create_subprocess_exec(
                self.ffmpeg_path, "-hide_banner", "-encoders",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
            stdout, _ = await proc.communicate()

            self.available_encoders = []
            for line in stdout.decode(errors="ignore").split("\n"):
                parts = line.split()
                if len(parts) >= 2 and parts[0][:1] in ("V", "A") and parts[1] != "=":
                    self.available_encoders.append(parts[1])

            self._initialized = True
            logger.info(
                "FFmpeg %s initialized - %d encoders",
                self.version, len(self.available_encoders)
            )
            return True

        except OSError as e:
            logger.error("FFmpeg check failed: %s", e)
            return False

    def has_encoder(self, name: str) -> bool:
        return name in self.available_encoders

    def missing_encoders(self, names=REQUIRED_ENCODERS) -> List[str]:
        """Encoders from ``names`` that the installed FFmpeg does not provide."""
        return [name for name in names if not self.has_encoder(name)]

    async def probe(self, file_path: str) -> Dict[str, Any]:
        """Get media file information using ffprobe."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.ffprobe_path,
                "-v", "quiet",
                "-print_format", "json",
                "-show_format",
                "-show_streams",
                file_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise InspectError(f"ffprobe could not be started: {e}") from e

        stdout, stderr = await proc.communicate()

        if proc.returncode != 0:
            raise InspectError(f"ffprobe failed: {stderr.decode(errors='ignore').strip() or proc.returncode}")

        try:
            return json.loads(stdout.decode())
        except ValueError as e:
            raise InspectError(f"ffprobe returned invalid JSON: {e}") from e

    async def get_video_info(self, file_path: str) -> VideoInfo:
        """Inspect a video file: duration, resolution, frame rate and codecs."""
        return parse_probe_output(await self.probe(file_path))
