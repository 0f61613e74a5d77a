"""Tests for the HTTP endpoints that need neither Redis nor a database."""

import hashlib
import hmac
import json
import uuid
from datetime import datetime
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from gateway.src.db.database import async_database_url, get_db
from gateway.src.main import app
from gateway.src.routes import pipelines
from gateway.src.services import github

async def no_db():
    yield None

@pytest.fixture
def client():
    app.dependency_overrides[get_db] = no_db
    yield TestClient(app)
    app.dependency_overrides.clear()

@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(github.settings, "github_webhook_secret", "hook-secret")
    return "hook-secret"

def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["name"] == "Conveyor"

def test_health(client):
    assert client.get("/health").json() == {"status": "healthy", "service": "conveyor-gateway"}

def test_webhook_ping(client, monkeypatch):
    monkeypatch.setattr(github.settings, "github_webhook_secret", "")
    response = client.post("/api/webhooks/github", json={"zen": "Keep it simple."}, headers={"X-GitHub-Event": "ping"})
    assert response.status_code == 200
    assert response.json()["status"] == "pong"

def test_webhook_rejects_bad_signature(client, webhook_secret):
    response = client.post(
        "/api/webhooks/github",
        json={"ref": "refs/heads/main"},
        headers={"X-GitHub-Event": "push", "X-Hub-Signature-256": "sha256=forged"},
    )
    assert response.status_code == 401

def test_webhook_accepts_signed_event(client, webhook_secret):
    body = json.dumps({"action": "opened"}).encode()
    signature = "sha256=" + hmac.new(webhook_secret.encode(), body, hashlib.sha256).hexdigest()

    response = client.post(
        "/api/webhooks/github",
        content=body,
        headers={"X-GitHub-Event": "issues", "X-Hub-Signature-256": signature, "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"

def test_webhook_invalid_json(client, monkeypatch):
    monkeypatch.setattr(github.settings, "github_webhook_secret", "")
    response = client.post(
        "/api/webhooks/github",
        content=b"{not json",
        headers={"X-GitHub-Event": "push", "Content-Type": "application/json"},
    )
    assert response.status_code == 400

def test_push_without_commit_is_skipped(client, monkeypatch):
    monkeypatch.setattr(github.settings, "github_webhook_secret", "")
    payload = {
        "ref": "refs/heads/main",
        "repository": {"name": "app", "full_name": "acme/app", "clone_url": "https://github.com/acme/app.git"},
        "head_commit": None,
        "pusher": {"name": "ci-bot"},
    }

    response = client.post("/api/webhooks/github", json=payload, headers={"X-GitHub-Event": "push"})

    assert response.json() == {"status": "skipped", "reason": "No commit SHA"}

def test_manual_trigger_rejects_invalid_definition(client):
    definition = """
name: app
stages:
  - name: Deploy
    needs: [Build]
    steps:
      - ./deploy.sh
"""
    response = client.post(
        "/api/pipelines/runs",
        json={"repository_url": "https://github.com/acme/app.git", "definition": definition},
    )

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["location"] == "stages[0].needs"
    assert "unknown stage 'Build'" in detail["reason"]

@pytest.mark.parametrize(
    "url, expected",
    [
        ("postgresql://u:p@db:5432/conveyor", "postgresql+asyncpg://u:p@db:5432/conveyor"),
        ("postgresql+psycopg2://u:p@db/conveyor", "postgresql+asyncpg://u:p@db/conveyor"),
        ("postgresql+asyncpg://u:p@db/conveyor", "postgresql+asyncpg://u:p@db/conveyor"),
    ],
)
def test_async_database_url(url, expected):
    assert async_database_url(url) == expected

def stored_run(status="running", **extra):
    run = SimpleNamespace(
        id=uuid.uuid4(),
        build_number=4,
        status=status,
        commit_sha="abc123",
        branch="main",
        triggered_by="push",
        started_at=None,
        finished_at=None,
        created_at=datetime(2024, 1, 1, 12, 0),
        stages=[],
        steps=[],
        artifacts=None,
    )
    for key, value in extra.items():
        setattr(run, key, value)
    return run

@pytest.fixture
def load_run(monkeypatch):
    runs = {}

    async def fake_load_run(db, run_id):
        return runs[run_id]

    monkeypatch.setattr(pipelines, "_load_run", fake_load_run)
    return runs

@pytest.fixture
def cancels(monkeypatch):
    requested = []

    async def fake_request_cancel(run_id):
        requested.append(run_id)

    monkeypatch.setattr(pipelines, "request_cancel", fake_request_cancel)
    return requested

def test_manual_trigger_with_inline_definition(client, monkeypatch):
    created = {}
    definition = """
name: app
stages:
  - name: Build
    steps: [make]
  - name: Test
    steps: [make test]
"""

    async def fake_repository(db, repo_info):
        created["repo_info"] = repo_info
        return SimpleNamespace(id=uuid.uuid4())

    async def fake_create(db, repository, definition, repo_info, triggered_by=None):
        created["triggered_by"] = triggered_by
        return SimpleNamespace(id=uuid.UUID(int=1), build_number=5)

    monkeypatch.setattr(pipelines, "get_or_create_repository", fake_repository)
    monkeypatch.setattr(pipelines, "create_pipeline_run", fake_create)

    response = client.post(
        "/api/pipelines/runs",
        json={"repository_url": "https://github.com/acme/app.git", "branch": "dev", "definition": definition},
    )

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "queued"
    assert body["run_id"] == str(uuid.UUID(int=1))
    assert body["build_number"] == 5
    assert body["stages"] == 2
    assert created["triggered_by"] == "manual"
    assert created["repo_info"]["repo_full_name"] == "acme/app"
    assert created["repo_info"]["branch"] == "dev"

def test_cancel_running_run(client, load_run, cancels):
    run = stored_run("running")
    load_run[run.id] = run

    response = client.post(f"/api/pipelines/runs/{run.id}/cancel")

    assert response.status_code == 200
    assert response.json()["status"] == "cancelling"
    assert cancels == [str(run.id)]

@pytest.mark.parametrize("status", ["success", "failed", "unstable", "aborted"])
def test_cancel_finished_run_conflicts(client, load_run, cancels, status):
    run = stored_run(status)
    load_run[run.id] = run

    response = client.post(f"/api/pipelines/runs/{run.id}/cancel")

    assert response.status_code == 409
    assert cancels == []

def test_run_artifacts(client, load_run):
    run = stored_run("success", artifacts=[
        {"name": "trivyfs.txt", "path": "/srv/ws/trivyfs.txt", "size": 12, "sha256": "ab", "stage": "Scan"},
    ])
    load_run[run.id] = run

    response = client.get(f"/api/pipelines/runs/{run.id}/artifacts")

    assert response.status_code == 200
    assert response.json() == [{"name": "trivyfs.txt", "size": 12, "sha256": "ab", "stage": "Scan"}]

def test_logs_are_grouped_by_stage(client, load_run):
    def step(stage_order, step_order, name, logs):
        return SimpleNamespace(stage_order=stage_order, step_order=step_order, name=name,
                               status="success", exit_code=0, logs=logs)

    run = stored_run(
        "success",
        stages=[
            SimpleNamespace(name="Test", stage_order=1, status="success"),
            SimpleNamespace(name="Build", stage_order=0, status="success"),
        ],
        steps=[
            step(1, 0, "make test", "ok\n"),
            step(0, 1, "archive", "archived out.tar\n"),
            step(0, 0, "make", "compiled\n"),
        ],
    )
    load_run[run.id] = run

    body = client.get(f"/api/pipelines/runs/{run.id}/logs").json()

    assert [s["name"] for s in body["stages"]] == ["Build", "Test"]
    assert [s["name"] for s in body["stages"][0]["steps"]] == ["make", "archive"]
    assert body["stages"][1]["steps"][0]["logs"] == "ok\n"

    only_test = client.get(f"/api/pipelines/runs/{run.id}/logs", params={"stage": "Test"}).json()
    assert [s["name"] for s in only_test["stages"]] == ["Test"]

    assert client.get(f"/api/pipelines/runs/{run.id}/logs", params={"stage": "Deploy"}).status_code == 404
