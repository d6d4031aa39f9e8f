from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from eventlens.apps.api.deps import get_resources
from eventlens.apps.api.state import AppResources
from eventlens.core.clock import isoformat, utc_now
from eventlens.persistence.db import pool_stats

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    success: bool
    message: str
    timestamp: str
    db_pool: dict[str, int | None]


@router.get("/health", response_model=HealthResponse)
async def health(resources: AppResources = Depends(get_resources)) -> dict:
    # Liveness only; never touches the database or cache.
    return {
        "success": True,
        "message": f"{resources.settings.app_name} API is running",
        "timestamp": isoformat(utc_now()),
        "db_pool": pool_stats(resources.engine),
    }


@router.get("/")
async def root(resources: AppResources = Depends(get_resources)) -> dict:
    return {
        "success": True,
        "message": f"Welcome to {resources.settings.app_name} API",
        "version": "0.1.0",
        "documentation": "/docs",
        "endpoints": {
            "health": "/health",
            "auth": "/api/auth",
            "analytics": "/api/analytics",
        },
    }
