"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter

from shipyard import __version__
from shipyard.api.deploy import get_run_manager

router = APIRouter()

START_TIME = datetime.now(timezone.utc)


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """Simple health check endpoint."""
    runs = get_run_manager().list()
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "startedAt": START_TIME.isoformat(),
        "activeRuns": sum(1 for r in runs if r.is_active),
    }
