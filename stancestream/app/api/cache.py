"""Semantic cache metrics endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, status

from ..services import Services

router = APIRouter(prefix="/api/cache", tags=["cache"])

# Set by the application factory at startup
services: Optional[Services] = None


def _services() -> Services:
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cache not ready")
    return services


@router.get("/metrics")
async def cache_metrics() -> Dict[str, Any]:
    snapshot = await _services().cache.metrics_snapshot()
    return {"metrics": snapshot.to_dict(), "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/stats")
async def cache_stats() -> Dict[str, Any]:
    stats = await _services().cache.stats()
    return {"stats": stats, "timestamp": datetime.now(timezone.utc).isoformat()}
