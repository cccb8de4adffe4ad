"""Tests for the FastAPI surface — fetch triggers, views, mutations, errors."""

from __future__ import annotations

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from fakes import BASE_URL, FakeBackend, make_raw_ticket
from ticket_sync.api import main
from ticket_sync.client import TicketApiClient
from ticket_sync.store import TicketStore
from ticket_sync.sync import TicketSync


@pytest.fixture(scope="module")
def api_backend():
    fake = FakeBackend()
    fake.add(make_raw_ticket())
    fake.add(make_raw_ticket(
        id="TIK-1002",
        subject="Invoice charged twice",
        status={"id": 2, "name": "Pending"},
        priority={"id": 1, "name": "Low"},
        assigneeId=7,
    ))
    return fake


@pytest.fixture(scope="module")
def client(api_backend):
    def factory():
        transport = httpx.MockTransport(api_backend.handle)
        return TicketSync(TicketApiClient(BASE_URL, transport=transport))

    main._state["sync_factory"] = factory
    with TestClient(main.app) as c:
        c.post("/sync/tickets")
        yield c
    main._state["sync_factory"] = TicketSync


# ── Health / fetch triggers ──────────────────────────────────────────────

def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["reference_loaded"] is True
    assert data["tickets_loaded"] == 2


def test_sync_reference(client):
    resp = client.post("/sync/reference")
    assert resp.status_code == 200
    assert resp.json()["applied"] is True


def test_list_view_is_camel_case(client):
    data = client.get("/views/tickets").json()
    assert [t["id"] for t in data["tickets"]] == ["TIK-1001", "TIK-1002"]
    assert data["pagination"] == {"page": 1, "limit": 10, "totalCount": 2, "totalPages": 1}
    first = data["tickets"][0]
    assert first["createdAt"] == "2024-03-01T10:00:00Z"
    assert first["status"]["color"] == "#3b82f6"


def test_dashboard_and_stats(client):
    assert client.post("/sync/dashboard", params={"limit": 1}).json()["applied"] is True
    dashboard = client.get("/views/dashboard").json()
    assert len(dashboard["tickets"]) == 1
    assert dashboard["pagination"]["totalCount"] == 2

    client.post("/sync/stats")
    stats = client.get("/views/stats").json()["stats"]
    assert stats == {"total": 2, "open": 2, "pending": 1, "resolved": 0, "highPriority": 1}


def test_search_view(client):
    data = client.get("/views/search", params={"q": "invoice"}).json()
    assert [t["id"] for t in data["tickets"]] == ["TIK-1002"]


def test_filters_round_trip(client):
    resp = client.put("/views/filters", json={"status": "2", "search": "twice"})
    assert resp.status_code == 200
    assert resp.json()["filters"]["status"] == "2"
    assert [t["id"] for t in client.get("/views/filtered").json()["tickets"]] == ["TIK-1002"]

    client.delete("/views/filters")
    assert len(client.get("/views/filtered").json()["tickets"]) == 2


def test_malformed_date_filter_is_422(client):
    resp = client.put("/views/filters", json={"dateFrom": "yesterday"})
    assert resp.status_code == 422
    assert "date_from" in resp.json()["message"]


def test_unloaded_ticket_is_404(client):
    assert client.get("/views/tickets/TIK-9999").status_code == 404


def test_detail_and_history(client):
    assert client.post("/sync/tickets/TIK-1001").json()["applied"] is True
    client.post("/sync/tickets/TIK-1001/history")
    current = client.get("/views/current").json()["ticket"]
    assert current["id"] == "TIK-1001"
    assert current["history"][0]["fieldName"] == "status"


def test_backend_404_is_passed_through(client):
    resp = client.post("/sync/tickets/TIK-404")
    assert resp.status_code == 404
    assert resp.json()["backendStatus"] == 404


def test_malformed_backend_ticket_is_502(client, api_backend):
    bad = make_raw_ticket(id="TIK-BAD")
    del bad["createdAt"]
    api_backend.add(bad)
    resp = client.post("/sync/tickets/TIK-BAD")
    assert resp.status_code == 502
    assert resp.json()["field"] == "createdAt"
    del api_backend.tickets["TIK-BAD"]


# ── Mutations ────────────────────────────────────────────────────────────

def test_create_ticket(client):
    resp = client.post("/tickets", json={"subject": "VPN drops", "priorityId": "4", "tags": ["vpn"]})
    assert resp.status_code == 201
    body = resp.json()
    assert body["warnings"] == []
    assert body["data"]["priority"]["name"] == "Urgent"
    assert body["data"]["tags"] == ["vpn"]
    assert client.get(f"/views/tickets/{body['data']['id']}").status_code == 200


def test_create_ticket_requires_subject(client):
    assert client.post("/tickets", json={"description": "no subject"}).status_code == 422


def test_empty_update_is_422(client):
    resp = client.put("/tickets/TIK-1001", json={})
    assert resp.status_code == 422


def test_backend_failure_on_update_is_502(client, api_backend):
    api_backend.failures[("PUT", "/api/tickets/TIK-1002")] = 500
    resp = client.put("/tickets/TIK-1002", json={"subject": "changed"})
    del api_backend.failures[("PUT", "/api/tickets/TIK-1002")]
    assert resp.status_code == 502
    assert resp.json()["message"] == "Failed to update ticket"
    assert client.get("/views/tickets/TIK-1002").json()["ticket"]["subject"] == "Invoice charged twice"


def test_status_change_with_sla_failure_returns_warning(client, api_backend):
    api_backend.failures[("POST", "/api/sla/pause/1001")] = 500
    resp = client.post("/tickets/TIK-1001/status", json={"status": "Pending"})
    del api_backend.failures[("POST", "/api/sla/pause/1001")]
    assert resp.status_code == 200
    body = resp.json()
    assert body["data"]["status"]["name"] == "Pending"
    assert body["warnings"] == ["Status updated, but SLA timer update failed"]


def test_priority_change(client):
    resp = client.post("/tickets/TIK-1001/priority", json={"priority": "Low"})
    assert resp.status_code == 200
    assert resp.json()["data"]["priority"]["name"] == "Low"


def test_assign(client):
    resp = client.post("/tickets/TIK-1001/assign", json={"agentId": 7})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["assignee"]["firstName"] == "Ada"
    assert data["department"]["name"] == "Support"


def test_comment_and_attachment(client):
    resp = client.post("/tickets/TIK-1001/comments", json={"content": "On it", "isInternal": True})
    assert resp.status_code == 201
    assert resp.json()["data"]["isInternal"] is True

    resp = client.post(
        "/tickets/TIK-1001/attachments",
        files={"file": ("notes.txt", b"hello", "text/plain")},
    )
    assert resp.status_code == 201
    assert resp.json()["data"][0]["originalName"] == "notes.txt"


def test_sla_endpoints(client):
    assert client.post("/tickets/TIK-1001/sla/pause").json()["data"] is True
    assert client.post("/tickets/TIK-1001/sla/resume").json()["data"] is True


def test_delete_ticket(client):
    resp = client.delete("/tickets/TIK-1002")
    assert resp.status_code == 200
    assert resp.json()["data"] == "TIK-1002"
    assert client.get("/views/tickets/TIK-1002").status_code == 404


# ── Push ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_event_stream_emits_store_changes():
    store = TicketStore()
    store.init()
    stream = main.event_stream(store)
    pending = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)

    store.set_search("vpn")
    chunk = await pending
    assert chunk.startswith("event: filters\n")
    assert '"reason": "search"' in chunk
    await stream.aclose()


@pytest.mark.asyncio
async def test_event_stream_ends_when_store_is_disposed():
    store = TicketStore()
    store.init()
    stream = main.event_stream(store, queue_size=1)
    pending = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)

    store.set_search("vpn")
    store.set_search("vpn gateway")
    store.dispose()

    first = await asyncio.wait_for(pending, timeout=1)
    assert first.startswith("event: store\n")
    assert '"reason": "disposed"' in first
    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(stream.__anext__(), timeout=1)


@pytest.mark.asyncio
async def test_event_stream_on_disposed_store_is_empty():
    store = TicketStore()
    chunks = [chunk async for chunk in main.event_stream(store)]
    assert chunks == []
