# tests/test_api.py

import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from fastapi import status
from httpx import ASGITransport, AsyncClient

from src.api import main
from src.api.auth_utils import create_access_token
from src.api.main import app

from tests.fakes import wait_until

pytestmark = pytest.mark.asyncio

# ==============================================================================
# 1. A tiny per-schema task table behind the fake connection
# ==============================================================================


class FakeTaskStore:
    """Answers the statements issued by src.api.tasks, keyed by search_path."""

    def __init__(self):
        self.tasks: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.next_id = 1

    def __call__(self, schema: str, sql: str, params: Any) -> Optional[List[Dict[str, Any]]]:
        sql = " ".join(sql.split())
        rows = self.tasks[schema]
        now = datetime.now(timezone.utc)

        if sql == "SELECT 1":
            return [{"?column?": 1}]
        if sql.startswith("INSERT INTO tasks"):
            title, description, status_, priority, assignee, due_date, created_by = params
            row = {
                "id": self.next_id,
                "title": title,
                "description": description,
                "status": status_,
                "priority": priority,
                "assignee": assignee,
                "due_date": due_date,
                "created_by": created_by,
                "created_at": now,
                "updated_at": now,
            }
            self.next_id += 1
            rows.append(row)
            return [dict(row)]
        if sql.startswith("UPDATE tasks SET"):
            cols = re.findall(r"(\w+)=%s", sql.split(" WHERE ")[0])
            *values, task_id = params
            for row in rows:
                if row["id"] == task_id:
                    row.update(zip(cols, values))
                    row["updated_at"] = now
                    return [dict(row)]
            return []
        if sql.startswith("DELETE FROM tasks"):
            for row in list(rows):
                if row["id"] == params[0]:
                    rows.remove(row)
                    return [dict(row)]
            return []
        if sql.startswith("SELECT COUNT(*) AS total"):
            count = lambda col, val: sum(1 for r in rows if r[col] == val)  # noqa: E731
            return [
                {
                    "total": len(rows),
                    "todo": count("status", "todo"),
                    "in_progress": count("status", "in_progress"),
                    "done": count("status", "done"),
                    "low": count("priority", "low"),
                    "medium": count("priority", "medium"),
                    "high": count("priority", "high"),
                    "overdue": 0,
                }
            ]
        if sql.startswith("SELECT") and "FROM tasks" in sql:
            if "WHERE id=%s" in sql:
                return [dict(r) for r in rows if r["id"] == params[0]]
            result = [dict(r) for r in rows]
            filters = re.findall(r"(status|assignee)=%s", sql.split(" ORDER BY ")[0])
            for col, val in zip(filters, params):
                result = [r for r in result if r[col] == val]
            return sorted(result, key=lambda r: r["id"], reverse=True)
        raise AssertionError(f"unexpected statement: {sql}")


@pytest.fixture
def store(fake_db) -> FakeTaskStore:
    task_store = FakeTaskStore()
    fake_db.handler = task_store
    return task_store


@pytest_asyncio.fixture
async def client(manager, store):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


def auth(tenant_id: str = "acme", user_id: str = "u-1") -> Dict[str, str]:
    token = create_access_token(user_id, f"{user_id}@{tenant_id}.com", tenant_id)
    return {"Authorization": f"Bearer {token}"}


# ==============================================================================
# 2. Health
# ==============================================================================


async def test_index(client):
    resp = await client.get("/")
    assert resp.status_code == 200
    assert resp.json()["endpoints"]["tasks"] == "/api/tasks"


async def test_health_reports_connected_database(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["database"] == "connected"


async def test_health_stays_200_when_database_is_down(client, fake_db):
    fake_db.unreachable = True
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "degraded"
    assert body["database"] == "disconnected"
    assert "could not connect" in body["warning"]


async def test_readiness_reconnects_then_reports_ready(client, manager):
    assert not manager.is_connected
    resp = await client.get("/health/ready")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ready"
    assert manager.is_connected


async def test_readiness_is_503_after_failed_reconnect_cycle(client, fake_db, sleeps):
    fake_db.unreachable = True
    resp = await client.get("/health/ready")
    assert resp.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    body = resp.json()
    assert body["status"] == "not ready"
    assert body["error"] == "Database not ready"
    assert fake_db.getconn_calls == 3
    assert sleeps == [1.0, 2.0]


async def test_liveness_ignores_database_state(client, fake_db):
    fake_db.unreachable = True
    resp = await client.get("/health/live")
    assert resp.status_code == 200
    assert resp.json()["status"] == "alive"


# ==============================================================================
# 3. Auth and tenant
# ==============================================================================


async def test_protected_routes_require_token(client):
    resp = await client.get("/api/tasks")
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Access token required"


async def test_unregistered_tenant_is_rejected_without_database_access(client, fake_db):
    resp = await client.get("/api/tasks", headers=auth("initech"))
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Invalid tenant"
    assert fake_db.getconn_calls == 0


async def test_me_returns_token_identity(client):
    resp = await client.get("/api/auth/me", headers=auth("globex", "u-9"))
    assert resp.status_code == 200
    assert resp.json() == {"user_id": "u-9", "email": "u-9@globex.com", "tenant_id": "globex"}


async def test_tenant_info(client):
    resp = await client.get("/api/tenant/info", headers=auth("acme"))
    assert resp.status_code == 200
    tenant = resp.json()["tenant"]
    assert tenant["id"] == "acme"
    assert tenant["namespace"] == "tenant-acme"
    assert tenant["resource_limits"] == {"cpu": "4", "memory": "16Gi", "storage": "100Gi", "pods": 20}


# ==============================================================================
# 4. Tasks
# ==============================================================================


async def test_task_crud_lifecycle(client, store):
    created = await client.post(
        "/api/tasks",
        json={"title": "Write report", "priority": "high", "assignee": "alice", "due_date": "2026-11-01"},
        headers=auth(),
    )
    assert created.status_code == 201
    task = created.json()["task"]
    assert task["status"] == "todo"
    assert task["created_by"] == "u-1"
    assert task["due_date"] == "2026-11-01"
    task_id = task["id"]

    fetched = await client.get(f"/api/tasks/{task_id}", headers=auth())
    assert fetched.json()["task"]["title"] == "Write report"

    updated = await client.put(f"/api/tasks/{task_id}", json={"status": "in_progress"}, headers=auth())
    assert updated.status_code == 200
    assert updated.json()["task"]["status"] == "in_progress"
    assert updated.json()["task"]["title"] == "Write report"

    deleted = await client.delete(f"/api/tasks/{task_id}", headers=auth())
    assert deleted.status_code == 200
    assert deleted.json()["message"] == "Task deleted successfully"

    missing = await client.get(f"/api/tasks/{task_id}", headers=auth())
    assert missing.status_code == 404


async def test_list_filters_by_status_and_assignee(client):
    for title, assignee in [("a", "alice"), ("b", "bob"), ("c", "alice")]:
        await client.post("/api/tasks", json={"title": title, "assignee": assignee}, headers=auth())
    await client.put("/api/tasks/3", json={"status": "done"}, headers=auth())

    everything = await client.get("/api/tasks", headers=auth())
    assert [t["title"] for t in everything.json()["tasks"]] == ["c", "b", "a"]

    alice_todo = await client.get("/api/tasks", params={"status": "todo", "assignee": "alice"}, headers=auth())
    assert [t["title"] for t in alice_todo.json()["tasks"]] == ["a"]


async def test_tasks_are_isolated_per_tenant(client, store):
    await client.post("/api/tasks", json={"title": "acme secret"}, headers=auth("acme"))

    globex = await client.get("/api/tasks", headers=auth("globex"))
    assert globex.json()["tasks"] == []
    assert len(store.tasks["tenant_acme"]) == 1
    assert store.tasks["public"] == []

    # Ids are not a way across tenants either.
    other = await client.get("/api/tasks/1", headers=auth("globex"))
    assert other.status_code == 404


async def test_statistics(client):
    await client.post("/api/tasks", json={"title": "a", "priority": "low"}, headers=auth())
    await client.post("/api/tasks", json={"title": "b", "status": "done"}, headers=auth())

    resp = await client.get("/api/tasks/statistics", headers=auth())
    assert resp.status_code == 200
    stats = resp.json()["statistics"]
    assert stats["total"] == 2
    assert stats["by_status"] == {"todo": 1, "in_progress": 0, "done": 1}
    assert stats["by_priority"] == {"low": 1, "medium": 1, "high": 0}


async def test_update_and_delete_of_missing_task_are_404(client):
    assert (await client.put("/api/tasks/99", json={"title": "x"}, headers=auth())).status_code == 404
    assert (await client.delete("/api/tasks/99", headers=auth())).status_code == 404


async def test_invalid_payload_is_422(client):
    resp = await client.post("/api/tasks", json={"title": "", "status": "blocked"}, headers=auth())
    assert resp.status_code == 422


async def test_database_failure_is_500_and_connection_returned(client, fake_db, manager):
    fake_db.fail_on = "FROM tasks"
    resp = await client.get("/api/tasks", headers=auth())
    assert resp.status_code == 500
    assert resp.json()["detail"] == "Failed to fetch tasks"
    assert manager.in_use == 0


async def test_pool_exhaustion_is_503(client, manager):
    held = [await manager.acquire() for _ in range(manager.settings.pool_max)]
    try:
        resp = await client.get("/api/tasks", headers=auth())
    finally:
        for conn in held:
            manager.release(conn)
    assert resp.status_code == 503
    assert "No database connection available" in resp.json()["detail"]


async def test_update_rejects_null_for_required_columns(client, store):
    await client.post("/api/tasks", json={"title": "a", "assignee": "alice"}, headers=auth())

    for field in ("title", "status", "priority"):
        resp = await client.put("/api/tasks/1", json={field: None}, headers=auth())
        assert resp.status_code == 422, field

    cleared = await client.put("/api/tasks/1", json={"assignee": None}, headers=auth())
    assert cleared.status_code == 200
    assert cleared.json()["task"]["assignee"] is None
    assert store.tasks["tenant_acme"][0]["title"] == "a"


@pytest.mark.parametrize("email", ["alice", "admin@acme.local"])
async def test_token_email_is_passed_through(client, email):
    token = create_access_token("u-1", email, "acme")
    resp = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    assert resp.json()["email"] == email


async def test_readiness_is_bounded_overall(client, fake_db, manager, monkeypatch):
    monkeypatch.setattr(main, "READINESS_TIMEOUT_MS", 100)
    fake_db.query_delay = 0.5

    resp = await client.get("/health/ready")

    assert resp.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert resp.json()["error"] == "Readiness check timeout after 100ms"
    assert await wait_until(lambda: manager.in_use == 0)
    assert manager.state.value == "disconnected"
