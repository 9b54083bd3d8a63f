"""Application configuration."""

from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # App info
    VERSION: str = "1.0.0"
    APP_NAME: str = "Convert Engine"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Server
    HOST: str = "127.0.0.1"
    PORT: int = 7861
    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # FFmpeg
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    PROBE_ON_SUBMIT: bool = True

    # Job queue
    MAX_CONCURRENT_JOBS: int = 2
    MIN_CONCURRENT_JOBS: int = 1
    CONCURRENCY_CEILING: int = 8
    DEFAULT_MAX_RETRIES: int = 3

    # Process supervision (seconds, 0 disables)
    KILL_TIMEOUT: float = 5.0
    JOB_TIMEOUT: float = 0
    STALL_TIMEOUT: float = 300
    DIAGNOSTIC_LINES: int = 20

    model_config = {
        "env_prefix": "CONVERT_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }


settings = Settings()
