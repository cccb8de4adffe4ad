"""Ticket store — the single owner of synchronised ticket state.

Holds:

* the full ticket collection + list-view :class:`PaginationState`
* the dashboard collection + its own, independent pagination
* the current ticket detail (comments / attachments / history)
* the dashboard stats aggregate
* the active filter and search predicate

Only the mutation coordinator and the sync facade write here.  Every write
is synchronous, so between two awaits of the event loop a reader always
sees a consistent store.  Subscribers get a :class:`StoreEvent` after each
write.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

from ticket_sync.config import DASHBOARD_LIMIT, DEFAULT_LIMIT
from ticket_sync.errors import ValidationError
from ticket_sync.projections import apply_filters, search
from ticket_sync.schemas import (
    PaginationState,
    Ticket,
    TicketDetail,
    TicketFilters,
    TicketStats,
)

logger = logging.getLogger(__name__)

_TICKET_FIELDS = frozenset(Ticket.model_fields)
_DETAIL_FIELDS = frozenset(TicketDetail.model_fields)


@dataclass(frozen=True)
class StoreEvent:
    slice: str                       # list | dashboard | current | stats | filters | store
    reason: str
    ticket_id: Optional[str] = None


Listener = Callable[[StoreEvent], None]


def _summary(ticket: Ticket) -> Ticket:
    """Strip detail-only sequences so collections hold plain tickets."""
    if type(ticket) is Ticket:
        return ticket
    return Ticket(**{name: getattr(ticket, name) for name in _TICKET_FIELDS})


def _adjust_total(pagination: PaginationState, delta: int) -> PaginationState:
    total = max(0, pagination.total_count + delta)
    return pagination.model_copy(update={
        "total_count": total,
        "total_pages": max(1, math.ceil(total / pagination.limit)),
    })


class TicketStore:
    """Explicit, disposable store — several may coexist (e.g. in tests)."""

    def __init__(self) -> None:
        self._active = False
        self._listeners: list[Listener] = []
        self._reset()

    def _reset(self) -> None:
        self._tickets: list[Ticket] = []
        self._list_pagination = PaginationState(limit=DEFAULT_LIMIT)
        self._dashboard: list[Ticket] = []
        self._dashboard_pagination = PaginationState(limit=DASHBOARD_LIMIT)
        self._current: TicketDetail | None = None
        self._stats: TicketStats | None = None
        self._filters = TicketFilters()
        self._query = ""

    # ── Lifecycle ────────────────────────────────────────────────────

    def init(self) -> None:
        self._reset()
        self._active = True
        logger.debug("Ticket store initialised")

    def dispose(self) -> None:
        self._active = False
        self._emit("store", "disposed")
        self._listeners.clear()
        self._reset()
        logger.debug("Ticket store disposed")

    @property
    def active(self) -> bool:
        return self._active

    # ── Subscriptions ────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, slice_name: str, reason: str, ticket_id: str | None = None) -> None:
        event = StoreEvent(slice_name, reason, ticket_id)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Store listener failed on %s", event)

    # ── Read accessors (never raise, never fetch) ────────────────────

    def all(self) -> list[Ticket]:
        return list(self._tickets)

    def by_id(self, ticket_id: str) -> Ticket | None:
        for ticket in self._tickets:
            if ticket.id == ticket_id:
                return ticket
        for ticket in self._dashboard:
            if ticket.id == ticket_id:
                return ticket
        if self._current is not None and self._current.id == ticket_id:
            return self._current
        return None

    def filtered(self) -> list[Ticket]:
        """Full collection under the active filters and search query."""
        return search(apply_filters(self._tickets, self._filters), self._query)

    def searched(self, query: str) -> list[Ticket]:
        return search(self._tickets, query)

    def dashboard_page(self) -> list[Ticket]:
        return list(self._dashboard)

    @property
    def current(self) -> TicketDetail | None:
        return self._current

    @property
    def list_pagination(self) -> PaginationState:
        return self._list_pagination

    @property
    def dashboard_pagination(self) -> PaginationState:
        return self._dashboard_pagination

    @property
    def stats(self) -> TicketStats | None:
        return self._stats

    @property
    def filters(self) -> TicketFilters:
        return self._filters

    @property
    def search_query(self) -> str:
        return self._query

    # ── Writes ───────────────────────────────────────────────────────

    def _writable(self, what: str) -> bool:
        if not self._active:
            logger.debug("Store inactive — dropping %s", what)
        return self._active

    @staticmethod
    def _checked(tickets: Iterable[Ticket], pagination: PaginationState) -> list[Ticket]:
        if not isinstance(pagination, PaginationState):
            raise ValidationError("pagination must be a normalised PaginationState")
        tickets = list(tickets)
        for ticket in tickets:
            if not isinstance(ticket, Ticket):
                raise ValidationError(f"store accepts normalised tickets only, got {ticket!r}")
        return [_summary(t) for t in tickets]

    def replace_all(self, tickets: Iterable[Ticket], pagination: PaginationState) -> None:
        """Replace list collection and list pagination together."""
        if not self._writable("replace_all"):
            return
        checked = self._checked(tickets, pagination)
        self._tickets = checked
        self._list_pagination = pagination
        self._emit("list", "replace")

    def replace_dashboard(self, tickets: Iterable[Ticket], pagination: PaginationState) -> None:
        """Same contract as :meth:`replace_all`, for the dashboard slice only."""
        if not self._writable("replace_dashboard"):
            return
        checked = self._checked(tickets, pagination)
        self._dashboard = checked
        self._dashboard_pagination = pagination
        self._emit("dashboard", "replace")

    def replace_stats(self, stats: TicketStats) -> None:
        if not self._writable("replace_stats"):
            return
        self._stats = stats
        self._emit("stats", "replace")

    def set_current(self, detail: TicketDetail | None) -> None:
        if not self._writable("set_current"):
            return
        if detail is not None and not isinstance(detail, TicketDetail):
            raise ValidationError(f"current ticket must be a TicketDetail, got {detail!r}")
        self._current = detail
        self._emit("current", "replace", detail.id if detail else None)

    def merge_current(self, partial: Ticket | Mapping[str, Any]) -> bool:
        """Shallow-merge into the current detail if it is the same ticket.

        A :class:`Ticket` contributes its ticket-level fields only, so the
        detail's comments / attachments / history survive.  A mapping may
        also carry fresher ``comments`` / ``attachments`` / ``history``.
        Returns ``False`` (no-op) when no matching detail is loaded.
        """
        if not self._writable("merge_current"):
            return False
        if isinstance(partial, Ticket):
            updates = {name: getattr(partial, name) for name in _TICKET_FIELDS}
        else:
            updates = dict(partial)
            unknown = set(updates) - _DETAIL_FIELDS
            if unknown:
                raise ValidationError(f"unknown ticket fields: {sorted(unknown)}")

        current = self._current
        target_id = updates.get("id", current.id if current else None)
        if current is None or target_id != current.id:
            logger.debug("merge_current for %s ignored — not the open ticket", target_id)
            return False

        merged = {name: getattr(current, name) for name in _DETAIL_FIELDS}
        merged.update(updates)
        self._current = TicketDetail.model_validate(merged)
        self._emit("current", "merge", current.id)
        return True

    def upsert_in_collections(self, ticket: Ticket) -> bool:
        """Replace *ticket* in place wherever it is held; append to the list if new.

        Returns ``True`` if an existing row was replaced.  Order never
        changes for existing rows.
        """
        if not self._writable("upsert_in_collections"):
            return False
        summary = self._checked([ticket], self._list_pagination)[0]

        replaced = False
        tickets = list(self._tickets)
        for i, existing in enumerate(tickets):
            if existing.id == summary.id:
                tickets[i] = summary
                replaced = True
                break
        if not replaced:
            tickets.append(summary)
            self._list_pagination = _adjust_total(self._list_pagination, +1)
        self._tickets = tickets

        self._dashboard = [
            summary if existing.id == summary.id else existing
            for existing in self._dashboard
        ]
        self._emit("list", "upsert", summary.id)
        return replaced

    def remove(self, ticket_id: str) -> bool:
        """Drop *ticket_id* from every collection; clear ``current`` if it matches."""
        if not self._writable("remove"):
            return False
        found = False
        if any(t.id == ticket_id for t in self._tickets):
            self._tickets = [t for t in self._tickets if t.id != ticket_id]
            self._list_pagination = _adjust_total(self._list_pagination, -1)
            found = True
        if any(t.id == ticket_id for t in self._dashboard):
            self._dashboard = [t for t in self._dashboard if t.id != ticket_id]
            self._dashboard_pagination = _adjust_total(self._dashboard_pagination, -1)
            found = True
        if self._current is not None and self._current.id == ticket_id:
            self._current = None
            found = True
        self._emit("list", "remove", ticket_id)
        return found

    # ── Filter / search predicate ────────────────────────────────────

    def set_filters(self, filters: TicketFilters | Mapping[str, Any]) -> None:
        if not self._writable("set_filters"):
            return
        if not isinstance(filters, TicketFilters):
            filters = TicketFilters.model_validate(filters)
        apply_filters([], filters)  # rejects malformed date bounds up front
        self._filters = filters
        self._emit("filters", "filters")

    def set_search(self, query: str) -> None:
        if not self._writable("set_search"):
            return
        self._query = query or ""
        self._emit("filters", "search")

    def clear_filters(self) -> None:
        if not self._writable("clear_filters"):
            return
        self._filters = TicketFilters()
        self._query = ""
        self._emit("filters", "clear")
