"""Manual deploy trigger and run inspection."""

from __future__ import annotations

import hmac
from typing import List, Optional

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel, Field

from shipyard.core.models import RunRecord
from shipyard.deploy.manager import RunManager

router = APIRouter()
logger = structlog.get_logger()


_run_manager: RunManager | None = None


def init_run_manager(manager: RunManager) -> RunManager:
    global _run_manager
    _run_manager = manager
    return _run_manager


def get_run_manager() -> RunManager:
    if _run_manager is None:
        raise HTTPException(status_code=503, detail="Run manager not initialized")
    return _run_manager


def _require_bearer(auth_header: str | None, settings_secret: str | None):
    if not settings_secret:
        return  # if not configured, skip auth for local dev
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
    token = auth_header.split(" ", 1)[1]
    if not hmac.compare_digest(token, settings_secret):
        raise HTTPException(status_code=403, detail="Invalid trigger token")


class DeployRequest(BaseModel):
    branch: str = Field(..., description="Branch to build")
    revision: str = Field(..., description="Revision identifier")


class RunAccepted(BaseModel):
    status: str
    runId: Optional[str] = None
    tag: Optional[str] = None
    reason: Optional[str] = None


@router.post("/deploy", response_model=RunAccepted, status_code=202)
async def deploy_endpoint(
    payload: DeployRequest,
    req: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
):
    _require_bearer(authorization, req.app.state.settings.trigger_token)

    manager = get_run_manager()
    record, created = await manager.submit(payload.branch, payload.revision, trigger="manual")
    return RunAccepted(
        status="accepted" if created else "duplicate",
        runId=record.run_id,
        tag=record.tag,
    )


@router.get("/runs", response_model=List[RunRecord])
async def list_runs() -> List[RunRecord]:
    return get_run_manager().list()


@router.get("/runs/{run_id}", response_model=RunRecord)
async def get_run(run_id: str) -> RunRecord:
    record = get_run_manager().get(run_id)
    if not record:
        raise HTTPException(status_code=404, detail="Run not found")
    return record
