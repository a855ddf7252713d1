from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from app import create_app
from features.projects.models import ArtifactType
from features.notifications.registry import InMemoryConnectionRegistry
from features.notifications.transport import WebSocketTransport
from features.projects.store import InMemoryStateStore
from services import build_services, memory_services

from fakes import RecordingQueue

HEADERS = {"X-User-Id": "user-1"}
BODY = {"projectName": "Blog", "requestPrompt": "Build a blog platform with posts and comments"}


@pytest.fixture()
def services():
    return memory_services(queue=RecordingQueue())


@pytest.fixture()
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def _create(client) -> str:
    response = client.post("/projects", json=BODY, headers=HEADERS)
    assert response.status_code == 201
    return response.json()["project"]["projectId"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["store"] == "memory"


def test_caller_identity_required(client):
    response = client.get("/projects")
    assert response.status_code == 403
    assert response.json()["error"]["reason"] == "forbidden"


def test_create_project_seeds_tasks(client):
    response = client.post("/projects", json=BODY, headers=HEADERS)

    assert response.status_code == 201
    data = response.json()
    assert data["project"]["status"] == "PENDING"
    assert [t["assignedAgent"] for t in data["tasks"]] == [
        "ProductManagerAgent",
        "BackendEngineerAgent",
        "FrontendEngineerAgent",
        "DevOpsEngineerAgent",
    ]
    listed = client.get("/projects", headers=HEADERS).json()
    assert listed["count"] == 1


def test_create_project_validates_prompt(client):
    response = client.post("/projects", json={"projectName": "Blog", "requestPrompt": "short"},
                           headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["error"]["reason"] == "validation_error"


def test_foreign_and_missing_projects(client):
    pid = _create(client)

    foreign = client.get(f"/projects/{pid}", headers={"X-User-Id": "user-2"})
    missing = client.get("/projects/proj-missing", headers=HEADERS)

    assert foreign.status_code == 403
    assert missing.status_code == 404
    assert missing.json()["error"]["reason"] == "not_found"


def test_approval_round_trip_over_http(client, services):
    pid = _create(client)
    pm_task = f"/projects/{pid}/tasks/task-1-ProductManagerAgent"

    started = client.post(f"/projects/{pid}/start", headers=HEADERS)
    assert started.status_code == 200
    assert started.json()["nextAgent"] == "ProductManagerAgent"

    assert client.patch(pm_task, json={"status": "IN_PROGRESS"}).status_code == 200
    assert client.patch(pm_task, json={"progress": 60}).json()["task"]["progress"] == 60
    waiting = client.patch(pm_task, json={"status": "PENDING_APPROVAL"})
    assert waiting.json()["task"]["status"] == "PENDING_APPROVAL"

    resumed = client.post(f"/projects/{pid}/resume", json={"feedback": "Ship it"}, headers=HEADERS)
    assert resumed.status_code == 200
    assert resumed.json()["nextAgent"] == "BackendEngineerAgent"
    assert services.queue.agents == ["ProductManagerAgent", "BackendEngineerAgent"]

    status = client.get(f"/projects/{pid}/status", headers=HEADERS).json()
    assert status["taskCounts"]["DONE"] == 1


def test_resume_without_pending_task(client):
    pid = _create(client)
    client.post(f"/projects/{pid}/start", headers=HEADERS)

    response = client.post(f"/projects/{pid}/resume", headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["error"]["reason"] == "no_task_pending_approval"


def test_reject_over_http(client):
    pid = _create(client)
    pm_task = f"/projects/{pid}/tasks/task-1-ProductManagerAgent"
    client.post(f"/projects/{pid}/start", headers=HEADERS)
    client.patch(pm_task, json={"status": "IN_PROGRESS"})
    client.patch(pm_task, json={"status": "PENDING_APPROVAL"})

    response = client.post(f"/projects/{pid}/reject", json={"reason": "Add search"},
                           headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["task"]["status"] == "TODO"
    assert response.json()["task"]["errorMessage"] == "Add search"


def test_task_patch_cannot_settle_approval(client, services):
    pid = _create(client)
    pm_task = f"/projects/{pid}/tasks/task-1-ProductManagerAgent"
    client.post(f"/projects/{pid}/start", headers=HEADERS)
    client.patch(pm_task, json={"status": "IN_PROGRESS"})
    client.patch(pm_task, json={"status": "PENDING_APPROVAL"})

    response = client.patch(pm_task, json={"status": "DONE"})

    assert response.status_code == 409
    assert response.json()["error"]["reason"] == "invalid_transition"
    tasks = client.get(f"/projects/{pid}/tasks", headers=HEADERS).json()["tasks"]
    assert tasks[0]["status"] == "PENDING_APPROVAL"
    assert services.queue.agents == ["ProductManagerAgent"]


def test_invalid_task_transition_is_conflict(client):
    pid = _create(client)

    response = client.patch(f"/projects/{pid}/tasks/task-1-ProductManagerAgent",
                            json={"status": "DONE"})

    assert response.status_code == 409
    assert response.json()["error"]["reason"] == "invalid_transition"


def test_delete_running_project_refused(client):
    pid = _create(client)
    client.post(f"/projects/{pid}/start", headers=HEADERS)

    response = client.delete(f"/projects/{pid}", headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["error"]["reason"] == "project_active"


def test_artifact_endpoints(client, services):
    pid = _create(client)
    artifact = asyncio.run(services.artifacts.create(pid, ArtifactType.SRS_DOCUMENT, "/tmp/srs.md"))
    path = f"/projects/{pid}/artifacts/{artifact.artifact_id}"

    listed = client.get(f"/projects/{pid}/artifacts", headers=HEADERS).json()
    assert [a["artifactId"] for a in listed["artifacts"]] == [artifact.artifact_id]

    updated = client.patch(path, json={"title": "Requirements"}, headers=HEADERS)
    assert updated.json()["artifact"]["title"] == "Requirements"

    assert client.delete(path, headers=HEADERS).status_code == 200
    assert client.get(path, headers=HEADERS).status_code == 404


def test_relay_to_unknown_connection_is_gone(client):
    response = client.post("/connections/nobody", content=b'{"type": "task_update"}')
    assert response.status_code == 410


def test_websocket_receives_project_events(client):
    pid = _create(client)

    with client.websocket_connect("/ws", headers=HEADERS) as ws:
        hello = ws.receive_json()
        assert hello["type"] == "connected"

        ws.send_json({"action": "subscribe", "projectId": pid})
        ack = ws.receive_json()
        assert ack == {"type": "subscribed", "connectionId": hello["connectionId"], "projectId": pid}

        client.post(f"/projects/{pid}/start", headers=HEADERS)
        event = ws.receive_json()
        assert event["type"] == "project_update"
        assert event["projectId"] == pid
        assert event["data"]["status"] == "IN_PROGRESS"


def test_websocket_refuses_foreign_project(client):
    pid = _create(client)

    with client.websocket_connect("/ws", headers={"X-User-Id": "user-2"}) as ws:
        ws.receive_json()
        ws.send_json({"action": "subscribe", "projectId": pid})
        reply = ws.receive_json()

    assert reply["type"] == "error"
    assert reply["error"]["reason"] == "forbidden"


def test_websocket_survives_malformed_frame(client):
    pid = _create(client)

    with client.websocket_connect("/ws", headers=HEADERS) as ws:
        ws.receive_json()
        ws.send_text("not json")
        reply = ws.receive_json()

        ws.send_json({"action": "subscribe", "projectId": pid})
        ack = ws.receive_json()

    assert reply["type"] == "error"
    assert reply["error"]["reason"] == "validation_error"
    assert ack["type"] == "subscribed"


def test_startup_purges_expired_connections():
    now = [0.0]
    registry = InMemoryConnectionRegistry(ttl_sec=10, clock=lambda: now[0])
    asyncio.run(registry.register("stale", "proj-1", "user-1"))
    now[0] = 60.0
    services = build_services(InMemoryStateStore(), registry, WebSocketTransport(),
                              queue=RecordingQueue())

    with TestClient(create_app(services)):
        assert registry.subscriptions == {}
