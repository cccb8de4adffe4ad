"""Shared fixtures: reference data, raw ticket factory, fake backend, live sync."""

from __future__ import annotations

import httpx
import pytest
import pytest_asyncio

from fakes import BASE_URL, FakeBackend, make_raw_ticket
from ticket_sync.client import TicketApiClient
from ticket_sync.reference import ReferenceData
from ticket_sync.schemas import ReferenceItem, UserRef
from ticket_sync.sync import TicketSync


@pytest.fixture
def reference_data() -> ReferenceData:
    return ReferenceData(
        statuses=(
            ReferenceItem(id="1", name="Open", color="#3b82f6"),
            ReferenceItem(id="2", name="Pending", color="#f59e0b"),
            ReferenceItem(id="3", name="In Progress", color="#8b5cf6"),
            ReferenceItem(id="4", name="Resolved", color="#10b981"),
        ),
        priorities=(
            ReferenceItem(id="1", name="Low", color="#6b7280"),
            ReferenceItem(id="3", name="High", color="#ef4444"),
            ReferenceItem(id="4", name="Urgent", color="#b91c1c"),
        ),
        departments=(
            ReferenceItem(id="10", name="Billing"),
            ReferenceItem(id="20", name="Support", color="#14b8a6"),
        ),
        types=(ReferenceItem(id="1", name="Incident"),),
        agents=(
            UserRef(id=7, first_name="Ada", last_name="Lovelace", email="ada@example.com"),
        ),
    )


@pytest.fixture
def raw_ticket():
    """Factory for raw server-shaped tickets."""
    return make_raw_ticket


@pytest.fixture
def backend() -> FakeBackend:
    fake = FakeBackend()
    fake.add(make_raw_ticket())
    fake.add(make_raw_ticket(
        id="TIK-1002",
        subject="Invoice charged twice",
        status={"id": 2, "name": "Pending"},
        priority={"id": 1, "name": "Low"},
        assigneeId=7,
        tags=["billing"],
    ))
    return fake


@pytest.fixture
def api(backend: FakeBackend) -> TicketApiClient:
    return TicketApiClient(BASE_URL, transport=httpx.MockTransport(backend.handle))


@pytest_asyncio.fixture
async def sync(api: TicketApiClient):
    """Initialised session with reference data and the list view loaded."""
    session = TicketSync(api)
    session.init()
    await session.load_reference_data()
    await session.fetch_tickets()
    yield session
    await session.dispose()
    await api.aclose()
