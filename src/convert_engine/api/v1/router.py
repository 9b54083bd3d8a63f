"""Main API router for v1."""

from fastapi import APIRouter

from convert_engine.api.v1.endpoints import jobs, media, websockets

api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
api_router.include_router(media.router, tags=["Media"])
api_router.include_router(websockets.router, tags=["Real-time"])
