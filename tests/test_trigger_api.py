"""Tests for the trigger service HTTP API."""

import json

import pytest
from fastapi.testclient import TestClient

from shipyard.api.webhooks import sign_payload
from shipyard.main import create_app

SECRET = "hook-secret"
REVISION = "a1b2c3d4e5f60718293a4b5c6d7e8f9012345678"


@pytest.fixture
def client(settings, pipeline_config, stub_pipeline):
    settings.webhook_secret = SECRET
    settings.trigger_token = "deploy-token"
    stub_pipeline.finish = False
    app = create_app(settings, pipeline_config, pipeline=stub_pipeline)
    with TestClient(app) as client:
        yield client


def _push(client, payload, secret=SECRET, event="push"):
    body = json.dumps(payload).encode()
    headers = {"Content-Type": "application/json", "X-GitHub-Event": event}
    if secret:
        headers["X-Hub-Signature-256"] = sign_payload(body, secret)
    return client.post("/webhooks/push", content=body, headers=headers)


class TestWebhook:
    def test_push_to_tracked_branch_starts_run(self, client):
        r = _push(client, {"ref": "refs/heads/main", "after": REVISION})
        assert r.status_code == 202, r.text
        data = r.json()
        assert data["status"] == "accepted"
        assert data["tag"] == "main-a1b2c3d4"

        run = client.get(f"/runs/{data['runId']}").json()
        assert run["trigger"] == "push"
        assert run["branch"] == "main"

    def test_missing_signature(self, client):
        assert _push(client, {"ref": "refs/heads/main", "after": REVISION}, secret=None).status_code == 401

    def test_wrong_signature(self, client):
        assert _push(client, {"ref": "refs/heads/main", "after": REVISION}, secret="nope").status_code == 403

    @pytest.mark.parametrize(
        "payload, reason",
        [
            ({"ref": "refs/tags/v1.0", "after": REVISION}, "not a branch push"),
            ({"ref": "refs/heads/main", "after": "0" * 40, "deleted": True}, "branch deleted"),
            ({"ref": "refs/heads/experiment", "after": REVISION}, "branch experiment is not tracked"),
        ],
    )
    def test_ignored_pushes(self, client, payload, reason):
        r = _push(client, payload)
        assert r.status_code == 200
        assert r.json()["status"] == "ignored"
        assert r.json()["reason"] == reason
        assert client.get("/runs").json() == []

    def test_ping(self, client):
        r = _push(client, {"zen": "Keep it logically awesome."}, event="ping")
        assert r.status_code == 200
        assert r.json()["reason"] == "ping"

    def test_body_must_be_json_object(self, client):
        body = b"[1, 2]"
        r = client.post(
            "/webhooks/push",
            content=body,
            headers={"X-Hub-Signature-256": sign_payload(body, SECRET), "X-GitHub-Event": "push"},
        )
        assert r.status_code == 400


class TestManualDeploy:
    def test_requires_bearer_token(self, client):
        body = {"branch": "main", "revision": REVISION}
        assert client.post("/deploy", json=body).status_code == 401
        r = client.post("/deploy", json=body, headers={"Authorization": "Bearer wrong"})
        assert r.status_code == 403

    def test_accepts_and_deduplicates(self, client):
        body = {"branch": "feature/auth", "revision": "E5F6A7B8"}
        headers = {"Authorization": "Bearer deploy-token"}

        first = client.post("/deploy", json=body, headers=headers)
        assert first.status_code == 202, first.text
        assert first.json()["status"] == "accepted"
        assert first.json()["tag"] == "feature-auth-e5f6a7b8"

        second = client.post("/deploy", json=body, headers=headers)
        assert second.json()["status"] == "duplicate"
        assert second.json()["runId"] == first.json()["runId"]
        assert len(client.get("/runs").json()) == 1

    def test_invalid_branch(self, client):
        r = client.post(
            "/deploy",
            json={"branch": "///", "revision": REVISION},
            headers={"Authorization": "Bearer deploy-token"},
        )
        assert r.status_code == 400
        assert r.json()["error"] == "InvalidInputError"

    def test_missing_fields(self, client):
        r = client.post("/deploy", json={"branch": "main"}, headers={"Authorization": "Bearer deploy-token"})
        assert r.status_code == 422


class TestInspection:
    def test_unknown_run(self, client):
        r = client.get("/runs/does-not-exist")
        assert r.status_code == 404

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["activeRuns"] == 0

    def test_metrics(self, client):
        client.get("/health")
        r = client.get("/metrics/")
        assert r.status_code == 200
        assert "shipyard_http_requests_total" in r.text
