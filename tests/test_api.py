"""
REST API tests through the ASGI app.
"""

from datetime import timedelta

import pytest
from fastapi import Depends

from ctms.config import settings
from ctms.engine.audit import AuditRecorder
from ctms.engine.core import CTMSEngine
from ctms.main import app
from ctms.models import RealtimeEvent
from ctms.observability.metrics import metrics
from ctms.utils.time import utc_now


def due(days: int = 3) -> str:
    return (utc_now() + timedelta(days=days)).isoformat()


@pytest.mark.asyncio
async def test_health_needs_no_auth(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_missing_or_bad_token_is_401(client, seed):
    assert (await client.get("/tasks")).status_code == 401
    response = await client.get("/tasks", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    # Development header is ignored unless insecure mode is on
    response = await client.get("/tasks", headers={"X-User-ID": str(seed.alice.id)})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_create_and_fetch_task(client, seed, auth_headers, side_effects, publisher):
    response = await client.post(
        "/tasks",
        json={
            "title": "Prepare demo",
            "due_date": due(),
            "assigned_to": [str(seed.alice.id), str(seed.bob.id)],
            "priority": "high",
        },
        headers=auth_headers(seed.lead),
    )
    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Task created successfully"
    task = body["task"]
    assert task["status"] == "todo"
    assert task["priority"] == "high"
    assert {u["full_name"] for u in task["assigned_to"]} == {"Alice", "Bob"}
    assert task["team"]["name"] == "Platform"

    await side_effects.drain(timeout=5.0)
    assert publisher.named(RealtimeEvent.TASK_CREATED)[0][0]["id"] == task["id"]

    response = await client.get(f"/tasks/{task['id']}", headers=auth_headers(seed.alice))
    assert response.status_code == 200
    assert response.json()["task"]["title"] == "Prepare demo"

    response = await client.get(f"/tasks/{task['id']}", headers=auth_headers(seed.outsider))
    assert response.status_code == 403
    assert response.json()["reason"] == "not_visible"


@pytest.mark.asyncio
async def test_member_create_for_other_is_403_and_nothing_persisted(client, seed, auth_headers):
    response = await client.post(
        "/tasks",
        json={"title": "Not mine", "due_date": due(), "assigned_to": [str(seed.bob.id)]},
        headers=auth_headers(seed.alice),
    )
    assert response.status_code == 403
    assert response.json()["reason"] == "forbidden_self_assign_only"

    listing = await client.get("/tasks", headers=auth_headers(seed.admin))
    assert listing.json()["count"] == 0


@pytest.mark.asyncio
async def test_validation_errors_are_400(client, seed, auth_headers):
    headers = auth_headers(seed.lead)

    response = await client.post("/tasks", json={"due_date": due()}, headers=headers)
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"

    response = await client.post(
        "/tasks", json={"title": "x", "due_date": due(), "priority": "whenever"}, headers=headers
    )
    assert response.status_code == 400

    response = await client.post(
        "/tasks",
        json={"title": "x", "due_date": due(), "assigned_to": ["00000000-0000-0000-0000-000000000001"]},
        headers=headers,
    )
    assert response.status_code == 400
    assert response.json()["code"] == "REFERENTIAL_ERROR"


@pytest.mark.asyncio
async def test_patch_status_and_silent_reassign_drop(client, seed, auth_headers, side_effects):
    created = await client.post(
        "/tasks",
        json={"title": "Mine", "due_date": due()},
        headers=auth_headers(seed.alice),
    )
    task_id = created.json()["task"]["id"]

    response = await client.patch(
        f"/tasks/{task_id}",
        json={"status": "in_progress", "assigned_to": [str(seed.bob.id)]},
        headers=auth_headers(seed.alice),
    )
    assert response.status_code == 200
    task = response.json()["task"]
    assert task["status"] == "in_progress"
    assert [u["id"] for u in task["assigned_to"]] == [str(seed.alice.id)]
    assert task["version"] == 2

    response = await client.patch(
        f"/tasks/{task_id}", json={"title": None}, headers=auth_headers(seed.alice)
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_list_filters(client, seed, auth_headers):
    headers = auth_headers(seed.lead)
    await client.post("/tasks", json={"title": "A", "due_date": due(), "assigned_to": [str(seed.alice.id)]}, headers=headers)
    await client.post(
        "/tasks",
        json={"title": "B", "due_date": due(), "assigned_to": [str(seed.bob.id)], "priority": "urgent"},
        headers=headers,
    )

    response = await client.get("/tasks", params={"priority": "urgent"}, headers=headers)
    assert [t["title"] for t in response.json()["tasks"]] == ["B"]

    response = await client.get("/tasks", params={"assigned_to": str(seed.alice.id)}, headers=headers)
    assert [t["title"] for t in response.json()["tasks"]] == ["A"]

    response = await client.get("/tasks", headers=auth_headers(seed.bob))
    assert response.json()["count"] == 1


@pytest.mark.asyncio
async def test_delete_requires_privileged_role(client, seed, auth_headers, side_effects, publisher):
    created = await client.post(
        "/tasks", json={"title": "Temp", "due_date": due()}, headers=auth_headers(seed.alice)
    )
    task_id = created.json()["task"]["id"]

    response = await client.delete(f"/tasks/{task_id}", headers=auth_headers(seed.alice))
    assert response.status_code == 403

    response = await client.delete(f"/tasks/{task_id}", headers=auth_headers(seed.hr))
    assert response.status_code == 200
    assert (await client.get(f"/tasks/{task_id}", headers=auth_headers(seed.hr))).status_code == 404

    await side_effects.drain(timeout=5.0)
    assert publisher.named(RealtimeEvent.TASK_DELETED)[0][0]["title"] == "Temp"


@pytest.mark.asyncio
async def test_comments_and_notifications_flow(client, seed, auth_headers, side_effects):
    created = await client.post(
        "/tasks",
        json={"title": "Shared", "due_date": due(), "assigned_to": [str(seed.alice.id), str(seed.bob.id)]},
        headers=auth_headers(seed.lead),
    )
    task_id = created.json()["task"]["id"]
    await side_effects.drain(timeout=5.0)

    response = await client.post(
        f"/tasks/{task_id}/comments", json={"content": "Looks good"}, headers=auth_headers(seed.alice)
    )
    assert response.status_code == 201
    assert response.json()["comment"]["author"]["full_name"] == "Alice"

    response = await client.post(
        f"/tasks/{task_id}/comments", json={"content": ""}, headers=auth_headers(seed.alice)
    )
    assert response.status_code == 400

    response = await client.get(f"/tasks/{task_id}/comments", headers=auth_headers(seed.bob))
    assert response.json()["count"] == 1

    await side_effects.drain(timeout=5.0)

    response = await client.get("/notifications", headers=auth_headers(seed.bob))
    body = response.json()
    assert body["unread_count"] == 2
    assert [n["type"] for n in body["notifications"]] == ["comment_added", "task_assigned"]

    first_id = body["notifications"][0]["id"]
    response = await client.patch(
        "/notifications/mark-read", json={"notificationIds": [first_id]}, headers=auth_headers(seed.bob)
    )
    assert response.json()["updated"] == 1

    response = await client.patch("/notifications/mark-read", headers=auth_headers(seed.bob))
    assert response.json()["updated"] == 1
    assert (await client.get("/notifications", headers=auth_headers(seed.bob))).json()["unread_count"] == 0


@pytest.mark.asyncio
async def test_changelog_endpoints(client, seed, auth_headers, side_effects):
    await client.post(
        "/tasks",
        json={"title": "Audited", "due_date": due(), "assigned_to": [str(seed.bob.id)]},
        headers=auth_headers(seed.lead),
    )
    await side_effects.drain(timeout=5.0)
    admin = auth_headers(seed.admin)

    page = (await client.get("/changelog", headers=admin)).json()
    assert page["total"] == 1
    assert page["logs"][0]["event_type"] == "task_created"
    assert page["logs"][0]["user_ip"] == "127.0.0.1"

    stats = (await client.get("/changelog/stats", headers=admin)).json()
    assert stats["by_event_type"] == [{"event_type": "task_created", "count": 1}]

    export = await client.get("/changelog/export", headers=admin)
    assert export.headers["content-type"].startswith("text/csv")
    assert export.text.splitlines()[0].startswith("Timestamp,Event Type,User,Email,Role")

    types = (await client.get("/changelog/event-types", headers=admin)).json()["event_types"]
    assert "task_created" in types

    cleared = await client.delete("/changelog/clear", params={"days": 30}, headers=admin)
    assert cleared.json()["deleted_count"] == 0

    assert (await client.get("/changelog", headers=auth_headers(seed.hr))).status_code == 403


@pytest.mark.asyncio
async def test_user_management(client, seed, auth_headers):
    response = await client.post(
        "/users",
        json={"full_name": "Nina New", "email": "nina@example.com", "role": "member", "team_id": str(seed.team_b)},
        headers=auth_headers(seed.hr),
    )
    assert response.status_code == 201
    user_id = response.json()["user"]["id"]

    response = await client.patch(
        f"/users/{user_id}/role",
        json={"role": "admin", "team_id": str(seed.team_a)},
        headers=auth_headers(seed.hr),
    )
    assert response.status_code == 403
    assert response.json()["reason"] == "admin_no_team"

    response = await client.patch(
        f"/users/{user_id}/role", json={"role": "team_lead"}, headers=auth_headers(seed.admin)
    )
    assert response.json()["user"]["role"] == "team_lead"
    assert response.json()["user"]["team_id"] == str(seed.team_b)

    response = await client.post(
        "/users",
        json={"full_name": "Nope", "email": "nope@example.com"},
        headers=auth_headers(seed.lead),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_metrics_admin_only(client, seed, auth_headers):
    assert (await client.get("/metrics", headers=auth_headers(seed.alice))).status_code == 403
    response = await client.get("/metrics", headers=auth_headers(seed.admin))
    assert set(response.json()) == {"counters", "gauges", "timings"}


class BrokenRecorder(AuditRecorder):
    def __init__(self):
        self.calls = 0

    async def record(self, event):
        self.calls += 1
        raise RuntimeError("change_logs unavailable")


def _stable(body: dict) -> dict:
    task = {k: v for k, v in body["task"].items() if k not in ("id", "created_at", "updated_at")}
    return {**body, "task": task}


@pytest.mark.asyncio
async def test_audit_failure_leaves_response_unchanged(client, seed, auth_headers, publisher, side_effects):
    from ctms.api.deps import get_db_session, get_engine

    headers = auth_headers(seed.lead)
    due_date = due()
    payload = {"title": "Twin", "due_date": due_date, "assigned_to": [str(seed.alice.id)]}
    working_id = (await client.post("/tasks", json=payload, headers=headers)).json()["task"]["id"]
    broken_id = (await client.post("/tasks", json=payload, headers=headers)).json()["task"]["id"]
    await side_effects.drain(timeout=5.0)

    patch = {"status": "review", "priority": "high"}
    working = await client.patch(f"/tasks/{working_id}", json=patch, headers=headers)

    recorder = BrokenRecorder()

    def engine_with_broken_audit(session=Depends(get_db_session)):
        return CTMSEngine(session, publisher, side_effects, recorder=recorder)

    app.dependency_overrides[get_engine] = engine_with_broken_audit
    broken = await client.patch(f"/tasks/{broken_id}", json=patch, headers=headers)
    await side_effects.drain(timeout=5.0)

    assert broken.status_code == working.status_code == 200
    assert _stable(broken.json()) == _stable(working.json())
    assert recorder.calls == settings.audit_max_attempts
    assert metrics.counter_value("side_effects.audit.failed") == 1


@pytest.mark.asyncio
async def test_member_patch_on_unrelated_task_is_403(client, seed, auth_headers):
    created = await client.post(
        "/tasks", json={"title": "Bob's", "due_date": due()}, headers=auth_headers(seed.bob)
    )
    task_id = created.json()["task"]["id"]

    response = await client.patch(
        f"/tasks/{task_id}", json={"status": "done"}, headers=auth_headers(seed.alice)
    )
    assert response.status_code == 403
    assert response.json()["reason"] == "access_denied"

    stored = await client.get(f"/tasks/{task_id}", headers=auth_headers(seed.bob))
    assert stored.json()["task"]["status"] == "todo"
    assert stored.json()["task"]["version"] == 1
