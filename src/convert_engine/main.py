"""Convert Engine - Main FastAPI Application."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from convert_engine.api.v1.endpoints.websockets import ConnectionManager
from convert_engine.api.v1.router import api_router
from convert_engine.core.config import Settings, settings
from convert_engine.core.errors import (
    ConversionEngineError,
    InspectError,
    JobNotCancellableError,
    JobNotFoundError,
    JobNotRetryableError,
    JobValidationError,
)
from convert_engine.core.events import EventBus
from convert_engine.core.jobs import ConversionOrchestrator
from convert_engine.services.ffmpeg import FFmpegService
from convert_engine.services.supervisor import ProcessSupervisor

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    JobValidationError: 400,
    JobNotFoundError: 404,
    JobNotCancellableError: 409,
    JobNotRetryableError: 409,
    InspectError: 422,
}


def build_orchestrator(config: Settings) -> ConversionOrchestrator:
    """Wire supervisor, event bus and orchestrator from configuration."""
    supervisor = ProcessSupervisor(
        ffmpeg_path=config.FFMPEG_PATH,
        kill_timeout=config.KILL_TIMEOUT,
        max_runtime=config.JOB_TIMEOUT,
        stall_timeout=config.STALL_TIMEOUT,
        diagnostic_lines=config.DIAGNOSTIC_LINES,
    )
    return ConversionOrchestrator(
        supervisor,
        EventBus(),
        max_concurrent_jobs=config.MAX_CONCURRENT_JOBS,
        min_concurrent_jobs=config.MIN_CONCURRENT_JOBS,
        concurrency_ceiling=config.CONCURRENCY_CEILING,
        default_max_retries=config.DEFAULT_MAX_RETRIES,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    config: Settings = app.state.settings
    logger.info("Starting %s v%s", config.APP_NAME, config.VERSION)

    ffmpeg: FFmpegService = app.state.ffmpeg
    if await ffmpeg.check_availability():
        logger.info("FFmpeg %s available", ffmpeg.version)
        missing = ffmpeg.missing_encoders()
        if missing:
            logger.warning("FFmpeg lacks encoders %s; jobs needing them will fail", ", ".join(missing))
    else:
        logger.warning("FFmpeg not found! Conversions will fail.")

    orchestrator: ConversionOrchestrator = app.state.orchestrator
    connections: ConnectionManager = app.state.connections
    orchestrator.events.subscribe_all(connections.event_listener)
    await orchestrator.start()

    yield

    # Cleanup
    logger.info("Shutting down %s...", config.APP_NAME)
    await orchestrator.stop()
    logger.info("Shutdown complete")


async def engine_error_handler(request: Request, exc: ConversionEngineError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _ERROR_STATUS.items() if isinstance(exc, error_type)),
        500,
    )
    return JSONResponse(status_code=status_code, content={"success": False, "error": exc.to_dict()})


def create_app(
    config: Optional[Settings] = None,
    orchestrator: Optional[ConversionOrchestrator] = None,
    ffmpeg: Optional[FFmpegService] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or settings

    app = FastAPI(
        title=config.APP_NAME,
        description="Video conversion job orchestration around FFmpeg",
        version=config.VERSION,
        lifespan=lifespan,
        docs_url="/docs" if config.DEBUG else None,
        redoc_url="/redoc" if config.DEBUG else None,
    )

    app.state.settings = config
    app.state.ffmpeg = ffmpeg or FFmpegService(config.FFMPEG_PATH, config.FFPROBE_PATH)
    app.state.orchestrator = orchestrator or build_orchestrator(config)
    app.state.connections = ConnectionManager()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if config.DEBUG else config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ConversionEngineError, engine_error_handler)

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": config.VERSION,
            "services": {
                "ffmpeg": app.state.ffmpeg.version is not None,
                "orchestrator": app.state.orchestrator.running,
            },
        }

    # Include API router
    app.include_router(api_router, prefix="/v1")

    return app


# Create app instance
app = create_app()


def main():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "convert_engine.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
