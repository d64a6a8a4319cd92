"""Push webhook: starts a run for pushes to tracked branches."""

from __future__ import annotations

import hashlib
import hmac
import json

import structlog
from fastapi import APIRouter, Header, HTTPException, Request, Response

from shipyard.api.deploy import RunAccepted, get_run_manager

router = APIRouter()
logger = structlog.get_logger()

BRANCH_PREFIX = "refs/heads/"
NULL_REVISION = "0" * 40


def sign_payload(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, signature: str | None, secret: str) -> None:
    if not signature:
        raise HTTPException(status_code=401, detail="Missing X-Hub-Signature-256 header")
    if not hmac.compare_digest(sign_payload(body, secret), signature.strip()):
        raise HTTPException(status_code=403, detail="Invalid webhook signature")


@router.post("/webhooks/push", response_model=RunAccepted, status_code=202)
async def push_webhook(
    request: Request,
    response: Response,
    signature: str | None = Header(default=None, alias="X-Hub-Signature-256"),
    event: str | None = Header(default=None, alias="X-GitHub-Event"),
):
    body = await request.body()
    secret = request.app.state.settings.webhook_secret
    if secret:
        verify_signature(body, signature, secret)

    if event == "ping":
        response.status_code = 200
        return RunAccepted(status="ignored", reason="ping")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    ref = payload.get("ref") or ""
    revision = payload.get("after") or ""

    reason = None
    if not ref.startswith(BRANCH_PREFIX):
        reason = "not a branch push"
    elif payload.get("deleted") or revision == NULL_REVISION:
        reason = "branch deleted"
    else:
        branch = ref[len(BRANCH_PREFIX):]
        if branch not in request.app.state.pipeline_config.trigger.branches:
            reason = f"branch {branch} is not tracked"

    if reason:
        logger.info("Push ignored", ref=ref, reason=reason)
        response.status_code = 200
        return RunAccepted(status="ignored", reason=reason)

    record, created = await get_run_manager().submit(branch, revision, trigger="push")
    return RunAccepted(
        status="accepted" if created else "duplicate",
        runId=record.run_id,
        tag=record.tag,
    )
