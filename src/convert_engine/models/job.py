"""Conversion job record, settings and quality presets."""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job status enumeration."""
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
CANCELLABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.QUEUED, JobStatus.PROCESSING})


class ConversionQuality(str, Enum):
    """Named quality presets."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    ULTRA = "ultra"
    CUSTOM = "custom"


OUTPUT_FORMATS = ("mp4", "avi", "mkv", "mov", "wmv", "webm", "m4v")

# Bitrates are in bits per second
QUALITY_PRESETS: Dict[ConversionQuality, Dict[str, Any]] = {
    ConversionQuality.LOW: {
        "bitrate": 500_000,
        "resolution": "854x480",
        "frame_rate": 24,
        "audio_codec": "aac",
        "audio_bitrate": 96_000,
    },
    ConversionQuality.MEDIUM: {
        "bitrate": 1_500_000,
        "resolution": "1280x720",
        "frame_rate": 30,
        "audio_codec": "aac",
        "audio_bitrate": 128_000,
    },
    ConversionQuality.HIGH: {
        "bitrate": 4_000_000,
        "resolution": "1920x1080",
        "frame_rate": 30,
        "audio_codec": "aac",
        "audio_bitrate": 192_000,
    },
    ConversionQuality.ULTRA: {
        "bitrate": 8_000_000,
        "resolution": "1920x1080",
        "frame_rate": 60,
        "audio_codec": "aac",
        "audio_bitrate": 256_000,
    },
    ConversionQuality.CUSTOM: {},
}


def get_quality_preset(quality: ConversionQuality) -> Dict[str, Any]:
    """Return a copy of the preset values for a quality tier."""
    return dict(QUALITY_PRESETS.get(ConversionQuality(quality), QUALITY_PRESETS[ConversionQuality.MEDIUM]))


class ConversionSettings(BaseModel):
    """Requested output settings for a conversion."""
    format: str = "mp4"
    quality: ConversionQuality = ConversionQuality.MEDIUM
    resolution: Optional[str] = None
    bitrate: Optional[int] = None
    frame_rate: Optional[float] = None
    audio_codec: Optional[str] = None
    audio_bitrate: Optional[int] = None
    custom_args: Optional[List[str]] = None
    maintain_aspect_ratio: bool = True
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @field_validator("format")
    @classmethod
    def _check_format(cls, value: str) -> str:
        value = value.lower().lstrip(".")
        if value not in OUTPUT_FORMATS:
            raise ValueError(f"Unsupported output format: {value}")
        return value

    @field_validator("bitrate", "audio_bitrate", "frame_rate")
    @classmethod
    def _check_positive(cls, value):
        if value is not None and value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_time(cls, value):
        if value is not None and value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _check_trim_window(self) -> "ConversionSettings":
        if self.start_time is not None and self.end_time is not None and self.end_time <= self.start_time:
            raise ValueError("end_time must be greater than start_time")
        return self

    @property
    def allows_overwrite(self) -> bool:
        return bool(self.custom_args) and "-y" in self.custom_args


@dataclass
class ConversionProgress:
    """Point-in-time read of an in-flight conversion."""
    percentage: float = 0.0
    current_time: float = 0.0
    total_time: float = 0.0
    speed: float = 0.0
    bitrate: float = 0.0
    frame: int = 0
    fps: float = 0.0
    eta: float = 0.0
    stage: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "percentage": self.percentage,
            "current_time": self.current_time,
            "total_time": self.total_time,
            "speed": self.speed,
            "bitrate": self.bitrate,
            "frame": self.frame,
            "fps": self.fps,
            "eta": self.eta,
            "stage": self.stage,
        }


@dataclass
class ConversionError:
    """Structured failure attached to a job result."""
    code: str
    message: str
    details: Optional[str] = None
    exit_code: Optional[int] = None
    ffmpeg_output: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "exit_code": self.exit_code,
            "ffmpeg_output": self.ffmpeg_output,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ConversionResult:
    """Outcome recorded when a job reaches a terminal state."""
    success: bool
    conversion_time: float = 0.0
    output_path: Optional[str] = None
    output_size: Optional[int] = None
    error: Optional[ConversionError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "conversion_time": self.conversion_time,
            "conversion_time_text": format_conversion_time(self.conversion_time),
            "output_path": self.output_path,
            "output_size": self.output_size,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class ConversionJob:
    """One submitted conversion and its lifecycle."""
    input_path: str
    output_path: str
    settings: ConversionSettings
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    total_time: Optional[float] = None
    progress: Optional[ConversionProgress] = None
    result: Optional[ConversionResult] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retryable: bool = True
    retry_count: int = 0
    max_retries: int = 3
    retry_of: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def can_cancel(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    @property
    def can_retry(self) -> bool:
        return (
            self.status == JobStatus.FAILED
            and self.retryable
            and self.retry_count < self.max_retries
        )

    def snapshot(self) -> "ConversionJob":
        """Detached copy safe to hand to readers outside the orchestrator."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "input_path": self.input_path,
            "output_path": self.output_path,
            "settings": self.settings.model_dump(mode="json"),
            "status": self.status.value,
            "status_text": status_text(self.status),
            "priority": self.priority,
            "total_time": self.total_time,
            "progress": self.progress.to_dict() if self.progress else None,
            "result": self.result.to_dict() if self.result else None,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "retryable": self.retryable,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "retry_of": self.retry_of,
        }


_STATUS_TEXT = {
    JobStatus.PENDING: "Pending",
    JobStatus.QUEUED: "Queued",
    JobStatus.PROCESSING: "Processing",
    JobStatus.COMPLETED: "Completed",
    JobStatus.FAILED: "Failed",
    JobStatus.CANCELLED: "Cancelled",
}


def status_text(status: JobStatus) -> str:
    return _STATUS_TEXT.get(status, str(status))


def estimate_output_size(settings: ConversionSettings, duration: Optional[float]) -> int:
    """Rough output size in bytes from the effective bitrates and duration."""
    effective = {**get_quality_preset(settings.quality), **settings.model_dump(exclude_none=True)}
    video_bitrate = effective.get("bitrate")
    if not duration or not video_bitrate:
        return 0

    if settings.start_time is not None and settings.end_time is not None:
        duration = settings.end_time - settings.start_time
    elif settings.end_time is not None:
        duration = min(duration, settings.end_time)
    elif settings.start_time is not None:
        duration = max(0.0, duration - settings.start_time)

    audio_bitrate = effective.get("audio_bitrate") or 128_000
    return round((video_bitrate + audio_bitrate) * duration / 8)


def format_conversion_time(seconds: float) -> str:
    """Format a duration for display (e.g. '12.5s', '3m 20s', '1h 5m')."""
    if seconds < 60:
        return f"{seconds:.1f}s"

    minutes = int(seconds // 60)
    remaining_seconds = seconds - minutes * 60
    if minutes < 60:
        return f"{minutes}m {remaining_seconds:.0f}s"

    hours = minutes // 60
    return f"{hours}h {minutes % 60}m"
