"""Request-scoped access to the components built at startup."""

from fastapi import Request

from convert_engine.core.config import Settings
from convert_engine.core.jobs import ConversionOrchestrator
from convert_engine.services.ffmpeg import FFmpegService


def get_orchestrator(request: Request) -> ConversionOrchestrator:
    return request.app.state.orchestrator


def get_ffmpeg(request: Request) -> FFmpegService:
    return request.app.state.ffmpeg


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
