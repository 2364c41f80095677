import asyncio
import base64
import json
from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import ORG, FakeStore, Harness, RecordingTransport, make_project, make_task, make_user

from tasksync.core.deps import decode_jwt_payload
from tasksync.main import app, wire_services
from tasksync.models.enums import UserRole
from tasksync.schemas.notifications import InAppPayload
from tasksync.services.feed import ChangeFeed
from tasksync.services.views import ViewLoader


def make_token(**claims) -> str:
    def part(data: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

    return f"{part({'alg': 'none'})}.{part(claims)}.signature"


def auth(user_id: str = "u-actor", role: str = "manager", organization_id: str = ORG) -> dict:
    token = make_token(sub=user_id, role=role, organization_id=organization_id, name=user_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def wired():
    harness = Harness(notifications_enabled=False)
    app.state.store = harness.store
    app.state.view_cache = harness.cache
    app.state.view_loader = ViewLoader(harness.store, harness.cache)
    app.state.orchestrator = harness.orchestrator
    # lifespan is not entered, so no database is touched
    client = TestClient(app)
    yield client, harness


def test_health(wired) -> None:
    client, _ = wired
    assert client.get("/health").json()["status"] == "healthy"


def test_decode_payload_without_padding() -> None:
    assert decode_jwt_payload(make_token(sub="abc"))["sub"] == "abc"
    with pytest.raises(ValueError):
        decode_jwt_payload("not-a-jwt")


def test_missing_or_broken_token_is_401(wired) -> None:
    client, _ = wired
    assert client.post("/mutations", json={"kind": "DeleteTask", "task_id": "t"}).status_code == 401
    response = client.post("/mutations", json={}, headers={"Authorization": "Bearer x.%%%.y"})
    assert response.status_code == 401
    assert response.json()["success"] is False


def test_mutation_success_envelope(wired) -> None:
    client, harness = wired
    harness.store.seed(make_project("p-1", manager_id="u-actor"))
    response = client.post(
        "/mutations",
        json={"kind": "CreateTask", "title": "Ship it", "project_id": "p-1"},
        headers=auth(),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["phase"] == "Done"
    assert ["project-tasks", ORG, "p-1"] in body["data"]["invalidated"]
    assert len(harness.store.tasks) == 1


def test_failed_mutation_maps_to_status(wired) -> None:
    client, harness = wired
    harness.store.seed(make_user("u-target"))
    response = client.post(
        "/mutations",
        json={"kind": "ChangeUserRole", "target_user_id": "u-target", "new_role": "admin"},
        headers=auth(role="user"),
    )
    assert response.status_code == 403
    assert response.json()["code"] == "AUTH_403"

    missing = client.post("/mutations", json={"kind": "DeleteTask", "task_id": "nope"}, headers=auth())
    assert missing.status_code == 404

    harness.store.seed(make_task("t-1"))
    harness.store.fail("update_task")
    remote = client.post(
        "/mutations", json={"kind": "ChangeTaskStatus", "task_id": "t-1", "status": "Completed"}, headers=auth(),
    )
    assert remote.status_code == 502


def test_unknown_action_is_422(wired) -> None:
    client, _ = wired
    response = client.post("/mutations", json={"kind": "DropDatabase"}, headers=auth())
    assert response.status_code == 422
    assert response.json()["code"] == "REQ_422"


def test_view_cache_round_trip(wired) -> None:
    client, harness = wired
    harness.store.seed(make_task("t-1", assigned_to_id="u-dev"))

    stale = client.get("/views/personal-tasks", params={"user_id": "u-dev"}, headers=auth())
    assert stale.json()["data"] == {"key": ["personal-tasks", ORG, "u-dev"], "stale": True}
    assert harness.store.calls == []

    loaded = client.post("/views/personal-tasks/load", params={"user_id": "u-dev"}, headers=auth())
    assert [t["id"] for t in loaded.json()["data"]["value"]] == ["t-1"]

    cached = client.get("/views/personal-tasks", params={"user_id": "u-dev"}, headers=auth())
    assert cached.json()["data"]["stale"] is False

    client.post("/mutations", json={"kind": "AssignTask", "task_id": "t-1", "assignee_ids": ["u-new"]}, headers=auth())
    after = client.get("/views/personal-tasks", params={"user_id": "u-dev"}, headers=auth())
    assert after.json()["data"]["stale"] is True


def test_view_errors(wired) -> None:
    client, _ = wired
    assert client.get("/views/nope", headers=auth()).status_code == 404
    assert client.get("/views/project-tasks", headers=auth()).status_code == 422
    assert client.get("/views/tasks", params={"organization_id": "org-2"}, headers=auth()).status_code == 404


def test_notification_inbox(wired) -> None:
    client, harness = wired
    record = asyncio.run(harness.store.insert_notification(InAppPayload(
        recipient_id="u-actor", organization_id=ORG, title="Task Assigned", content="hello",
    )))
    listed = client.get("/notifications", headers=auth()).json()["data"]
    assert [n["id"] for n in listed] == [record.id]

    assert client.patch(f"/notifications/{record.id}/read", headers=auth("u-other")).status_code == 404
    marked = client.patch(f"/notifications/{record.id}/read", headers=auth()).json()["data"]
    assert marked["read"] is True


def test_reconcile_endpoint(wired) -> None:
    client, harness = wired
    harness.store.seed(make_user("u-a", UserRole.SUPERADMIN))
    harness.orchestrator.pending_demotions["u-a"] = (UserRole.ADMIN, ORG)
    body = client.post("/mutations/reconcile", headers=auth()).json()
    assert body["data"]["resolved_demotions"] == ["u-a"]
    assert harness.store.users["u-a"].role == UserRole.ADMIN


@pytest.fixture
def live(monkeypatch):
    @asynccontextmanager
    async def idle_lifespan(app):
        yield

    # one event loop for requests and sockets, without the database startup
    monkeypatch.setattr(app.router, "lifespan_context", idle_lifespan)
    feed = ChangeFeed()
    store = FakeStore(feed=feed)
    wire_services(app, store, RecordingTransport(), feed=feed)
    with TestClient(app) as client:
        yield client, store, feed


def test_notification_stream_pushes_changes(live) -> None:
    client, store, feed = live
    store.seed(make_task("t-1"), make_user("u-actor"))
    welcome = asyncio.run(store.insert_notification(InAppPayload(
        recipient_id="u-actor", organization_id=ORG, title="Welcome", content="hello",
    )))
    state = app.state.orchestrator.state

    with client.websocket_connect("/notifications/stream", headers=auth()) as ws:
        snapshot = ws.receive_json()
        assert snapshot["type"] == "snapshot"
        assert [n["id"] for n in snapshot["data"]] == [welcome.id]
        assert feed.subscriber_count("u-actor") == 1
        # the session was loaded for the actor's organization
        assert "t-1" in state.tasks

        client.post(
            "/mutations", json={"kind": "AssignTask", "task_id": "t-1", "assignee_ids": ["u-actor"]}, headers=auth(),
        )
        inserted = ws.receive_json()
        assert inserted["type"] == "change"
        assert inserted["kind"] == "INSERT"
        assert inserted["row"]["user_id"] == "u-actor"
        assert inserted["row"]["id"] in state.notifications

        client.patch(f"/notifications/{welcome.id}/read", headers=auth())
        updated = ws.receive_json()
        assert updated["kind"] == "UPDATE"
        assert updated["row"]["read"] is True
        assert [n.id for n in state.unread_notifications("u-actor")] == [inserted["row"]["id"]]


def test_notification_stream_requires_token(live) -> None:
    client, _, feed = live
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/notifications/stream"):
            pass
    assert feed.subscriber_count() == 0


def test_notification_stream_accepts_query_token(live) -> None:
    client, _, _ = live
    token = auth()["Authorization"].split(" ", 1)[1]
    with client.websocket_connect(f"/notifications/stream?token={token}") as ws:
        assert ws.receive_json() == {"type": "snapshot", "data": []}
