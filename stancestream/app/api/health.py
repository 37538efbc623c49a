"""Health endpoint reporting store backend, cache and scheduler status."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from ..services import Services

router = APIRouter(tags=["health"])

# Set by the application factory at startup
services: Optional[Services] = None


@router.get("/api/health")
async def health() -> JSONResponse:
    """Return service health details and use 503 when degraded."""
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        "store": {"backend": None, "connected": False},
        "cache": {"entries": None},
        "debates": {"active": 0},
    }
    if services is None:
        payload["status"] = "starting"
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)

    payload["store"]["backend"] = services.settings.store_backend
    payload["debates"]["active"] = len(services.registry)
    payload["debates"]["metrics"] = services.scheduler.metrics_snapshot()
    try:
        payload["cache"]["entries"] = await services.vector_store.count()
        payload["store"]["connected"] = True
    except Exception as exc:
        payload["status"] = "degraded"
        payload["store"]["error"] = str(exc)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)

    return JSONResponse(status_code=status.HTTP_200_OK, content=payload)
