"""
Lab Range - API v1 Router
Aggregates all API endpoints
"""

from fastapi import APIRouter

from labrange.interfaces.api.v1.health import router as health_router
from labrange.interfaces.api.v1.sessions import router as sessions_router

api_router = APIRouter()

# Health check endpoints
api_router.include_router(
    health_router,
    prefix="/health",
    tags=["Health"],
)

# Lab session endpoints
api_router.include_router(
    sessions_router,
    prefix="/sessions",
    tags=["Lab Sessions"],
)
