"""Convert Engine - video conversion job orchestration around FFmpeg."""

__version__ = "1.0.0"
