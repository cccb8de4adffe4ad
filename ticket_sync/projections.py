"""View projections — pure functions recomputed from store state on every call.

Nothing here is cached, so a projection can never go stale relative to
the collection it was computed from.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Sequence

from ticket_sync.config import (
    CLOSED_STATUS_NAMES,
    HIGH_PRIORITY_NAMES,
    IN_PROGRESS_STATUS_NAMES,
    PENDING_STATUS_NAMES,
)
from ticket_sync.errors import ValidationError
from ticket_sync.schemas import ReferenceItem, Ticket, TicketFilters, TicketStats

UNASSIGNED = "unassigned"


def _parse_ts(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _bound(value: str, name: str) -> datetime:
    parsed = _parse_ts(value)
    if parsed is None:
        raise ValidationError(f"Invalid {name}: {value!r}")
    return parsed


def _created_within(ticket: Ticket, lower: datetime | None, upper: datetime | None) -> bool:
    created = _parse_ts(ticket.created_at)
    if created is None:
        return False
    if lower is not None and created < lower:
        return False
    if upper is not None and created > upper:
        return False
    return True


def _status_name(ticket: Ticket) -> str:
    return ticket.status.name.strip().lower()


def is_pending_status(status: ReferenceItem | None) -> bool:
    """Pending-like predicate used for SLA pause / resume."""
    return status is not None and status.name.strip().lower() in PENDING_STATUS_NAMES


# ── Filtering ────────────────────────────────────────────────────────────

def apply_filters(tickets: Sequence[Ticket], filters: TicketFilters | None) -> list[Ticket]:
    """AND-combination of the independent predicates in *filters*.

    Order of *tickets* is preserved.  Date bounds apply to ``created_at``
    and are inclusive; either may be omitted.
    """
    result = list(tickets)
    if filters is None or filters.is_empty:
        return result

    if filters.status:
        result = [t for t in result if t.status.id == filters.status]
    if filters.priority:
        result = [t for t in result if t.priority.id == filters.priority]
    if filters.department:
        result = [
            t for t in result
            if t.department is not None and t.department.id == filters.department
        ]
    if filters.assignee:
        if filters.assignee == UNASSIGNED:
            result = [t for t in result if t.assignee is None]
        else:
            result = [
                t for t in result
                if t.assignee is not None and str(t.assignee.id) == filters.assignee
            ]
    if filters.date_from or filters.date_to:
        lower = _bound(filters.date_from, "date_from") if filters.date_from else None
        upper = _bound(filters.date_to, "date_to") if filters.date_to else None
        result = [t for t in result if _created_within(t, lower, upper)]
    return result


# ── Search ───────────────────────────────────────────────────────────────

def searchable_text(ticket: Ticket) -> str:
    parts = [
        ticket.id,
        ticket.subject,
        ticket.requester.display_name,
        ticket.assignee.display_name if ticket.assignee else "",
        ticket.status.name,
        ticket.priority.name,
        " ".join(ticket.tags),
    ]
    return " ".join(parts).lower()


def search(tickets: Sequence[Ticket], query: str | None) -> list[Ticket]:
    """Tickets whose searchable text contains every whitespace token of *query*."""
    terms = (query or "").lower().split()
    if not terms:
        return list(tickets)
    return [
        t for t in tickets
        if all(term in searchable_text(t) for term in terms)
    ]


# ── Stats ────────────────────────────────────────────────────────────────

def compute_stats(tickets: Iterable[Ticket]) -> TicketStats:
    """Dashboard counters.

    ``open`` and ``pending`` overlap on purpose: a pending ticket is also
    counted as open (see DESIGN.md, open questions).
    """
    total = open_ = pending = resolved = high = 0
    for ticket in tickets:
        name = _status_name(ticket)
        total += 1
        if name not in CLOSED_STATUS_NAMES:
            open_ += 1
        if name in IN_PROGRESS_STATUS_NAMES:
            pending += 1
        if name in CLOSED_STATUS_NAMES:
            resolved += 1
        if ticket.priority.name.strip().lower() in HIGH_PRIORITY_NAMES:
            high += 1
    return TicketStats(
        total=total, open=open_, pending=pending, resolved=resolved, high_priority=high,
    )
