"""Data models for Convert Engine."""

from convert_engine.models.job import (
    OUTPUT_FORMATS,
    QUALITY_PRESETS,
    ConversionError,
    ConversionJob,
    ConversionProgress,
    ConversionQuality,
    ConversionResult,
    ConversionSettings,
    JobStatus,
    estimate_output_size,
    format_conversion_time,
    get_quality_preset,
    status_text,
)

__all__ = [
    "OUTPUT_FORMATS",
    "QUALITY_PRESETS",
    "ConversionError",
    "ConversionJob",
    "ConversionProgress",
    "ConversionQuality",
    "ConversionResult",
    "ConversionSettings",
    "JobStatus",
    "estimate_output_size",
    "format_conversion_time",
    "get_quality_preset",
    "status_text",
]
