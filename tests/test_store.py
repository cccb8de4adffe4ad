"""Tests for the ticket store — slices, merges, lifecycle, subscriptions."""

import pytest

from ticket_sync.errors import ValidationError
from ticket_sync.normalizer import normalize_ticket, normalize_ticket_detail
from ticket_sync.schemas import PaginationState, TicketFilters, TicketStats
from ticket_sync.store import TicketStore


@pytest.fixture
def store():
    s = TicketStore()
    s.init()
    yield s
    s.dispose()


@pytest.fixture
def tickets(raw_ticket, reference_data):
    return [
        normalize_ticket(raw_ticket(id="TIK-1"), reference_data),
        normalize_ticket(raw_ticket(id="TIK-2", subject="Printer jam", status="Pending"), reference_data),
        normalize_ticket(raw_ticket(id="TIK-3", subject="VPN drops"), reference_data),
    ]


def _page(total: int, limit: int = 10) -> PaginationState:
    return PaginationState(page=1, limit=limit, total_count=total, total_pages=max(1, -(-total // limit)))


# ── Defaults ─────────────────────────────────────────────────────────────

def test_accessors_before_first_fetch(store):
    assert store.all() == []
    assert store.filtered() == []
    assert store.dashboard_page() == []
    assert store.current is None
    assert store.stats is None
    assert store.by_id("TIK-1") is None
    assert store.list_pagination.total_count == 0
    assert store.dashboard_pagination.total_pages == 1


def test_empty_filter_returns_all(store, tickets):
    store.replace_all(tickets, _page(3))
    assert store.filtered() == store.all()


# ── Slices ───────────────────────────────────────────────────────────────

def test_replace_dashboard_never_touches_list(store, tickets):
    store.replace_all(tickets, _page(3))
    store.replace_dashboard(tickets[:1], _page(1, limit=5))
    assert [t.id for t in store.all()] == ["TIK-1", "TIK-2", "TIK-3"]
    assert store.list_pagination.total_count == 3
    assert store.dashboard_pagination.limit == 5
    assert [t.id for t in store.dashboard_page()] == ["TIK-1"]


def test_replace_all_rejects_raw_payloads(store, tickets, raw_ticket):
    store.replace_all(tickets, _page(3))
    with pytest.raises(ValidationError):
        store.replace_all([raw_ticket()], _page(1))
    assert len(store.all()) == 3
    assert store.list_pagination.total_count == 3


def test_replace_all_rejects_bad_pagination(store, tickets):
    with pytest.raises(ValidationError):
        store.replace_all(tickets, {"page": 1})
    assert store.all() == []


def test_collections_hold_summaries(store, raw_ticket, reference_data):
    detail = normalize_ticket_detail(
        raw_ticket(comments=[{"id": 1, "content": "hi"}]), reference_data,
    )
    store.replace_all([detail], _page(1))
    assert type(store.all()[0]).__name__ == "Ticket"


# ── Upsert / remove ──────────────────────────────────────────────────────

def test_upsert_replaces_in_place(store, tickets):
    store.replace_all(tickets, _page(3))
    store.replace_dashboard([tickets[1]], _page(1, limit=5))
    renamed = tickets[1].model_copy(update={"subject": "Printer fixed"})

    assert store.upsert_in_collections(renamed) is True
    assert [t.id for t in store.all()] == ["TIK-1", "TIK-2", "TIK-3"]
    assert store.by_id("TIK-2").subject == "Printer fixed"
    assert store.dashboard_page()[0].subject == "Printer fixed"
    assert store.list_pagination.total_count == 3


def test_upsert_appends_new_ticket_and_bumps_total(store, tickets, raw_ticket):
    store.replace_all(tickets, _page(3))
    new = normalize_ticket(raw_ticket(id="TIK-9"))
    assert store.upsert_in_collections(new) is False
    assert store.all()[-1].id == "TIK-9"
    assert store.list_pagination.total_count == 4


def test_remove_clears_current_and_adjusts_totals(store, tickets, raw_ticket, reference_data):
    store.replace_all(tickets, _page(3))
    store.replace_dashboard(tickets[:2], _page(2, limit=5))
    store.set_current(normalize_ticket_detail(raw_ticket(id="TIK-1"), reference_data))

    assert store.remove("TIK-1") is True
    assert store.by_id("TIK-1") is None
    assert store.current is None
    assert store.list_pagination.total_count == 2
    assert store.dashboard_pagination.total_count == 1


# ── Current detail ───────────────────────────────────────────────────────

def test_merge_current_is_noop_for_other_ticket(store, tickets, raw_ticket, reference_data):
    detail = normalize_ticket_detail(raw_ticket(id="TIK-1"), reference_data)
    store.set_current(detail)
    assert store.merge_current(tickets[1]) is False
    assert store.current == detail


def test_merge_current_preserves_comments(store, raw_ticket, reference_data):
    store.set_current(normalize_ticket_detail(
        raw_ticket(id="TIK-1", comments=[{"id": 1, "content": "hi"}]), reference_data,
    ))
    updated = normalize_ticket(raw_ticket(id="TIK-1", status="Resolved"), reference_data)
    assert store.merge_current(updated) is True
    assert store.current.status.name == "Resolved"
    assert [c.content for c in store.current.comments] == ["hi"]


def test_merge_current_rejects_unknown_fields(store, raw_ticket, reference_data):
    store.set_current(normalize_ticket_detail(raw_ticket(id="TIK-1"), reference_data))
    with pytest.raises(ValidationError):
        store.merge_current({"id": "TIK-1", "colour": "red"})


# ── Filters ──────────────────────────────────────────────────────────────

def test_filters_and_search_combine(store, tickets):
    store.replace_all(tickets, _page(3))
    store.set_filters({"status": "1"})
    assert [t.id for t in store.filtered()] == ["TIK-1", "TIK-3"]
    store.set_search("vpn")
    assert [t.id for t in store.filtered()] == ["TIK-3"]
    store.clear_filters()
    assert len(store.filtered()) == 3
    assert store.filters == TicketFilters()


def test_malformed_date_filter_is_rejected(store):
    with pytest.raises(ValidationError):
        store.set_filters(TicketFilters(date_from="yesterday"))
    assert store.filters.is_empty


# ── Lifecycle and subscriptions ──────────────────────────────────────────

def test_writes_to_inactive_store_are_dropped(tickets):
    store = TicketStore()
    store.replace_all(tickets, _page(3))
    assert store.all() == []
    store.init()
    store.replace_all(tickets, _page(3))
    store.dispose()
    assert store.all() == []
    assert store.active is False


def test_subscribers_receive_events(store, tickets):
    events = []
    unsubscribe = store.subscribe(events.append)
    store.replace_all(tickets, _page(3))
    store.replace_stats(TicketStats(total=3))
    unsubscribe()
    store.set_search("x")
    assert [(e.slice, e.reason) for e in events] == [("list", "replace"), ("stats", "replace")]


def test_failing_listener_does_not_break_write(store, tickets):
    def boom(event):
        raise RuntimeError("listener bug")

    seen = []
    store.subscribe(boom)
    store.subscribe(seen.append)
    store.replace_all(tickets, _page(3))
    assert len(store.all()) == 3
    assert len(seen) == 1


def test_stores_are_independent(tickets):
    a, b = TicketStore(), TicketStore()
    a.init()
    b.init()
    a.replace_all(tickets, _page(3))
    assert b.all() == []
