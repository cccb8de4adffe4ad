"""TicketSync — lifecycle owner and explicit fetch entry points.

One instance per session.  It owns the reference cache, the store, the
backend / SLA clients and the mutation coordinator.  Nothing is fetched
lazily: views call the ``fetch_*`` methods and then read the store.

Every fetch is tagged with a sequence number from its slice's
:class:`FetchSequencer` and may carry an :class:`InterestToken`.  A result
reaches the store only if the token is still interested *and* no newer
result for that slice has been applied in the meantime.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from ticket_sync.client import TicketApiClient
from ticket_sync.config import DASHBOARD_LIMIT, DEFAULT_LIMIT, DEFAULT_PAGE, STATS_FETCH_LIMIT
from ticket_sync.coordinator import MutationCoordinator
from ticket_sync.errors import NetworkError, NormalizationError, ValidationError
from ticket_sync.normalizer import (
    normalize_agents,
    normalize_history,
    normalize_pagination,
    normalize_reference_items,
    normalize_ticket,
    normalize_ticket_detail,
)
from ticket_sync.projections import compute_stats
from ticket_sync.reference import ReferenceData, ReferenceDataCache
from ticket_sync.schemas import Ticket
from ticket_sync.sequencing import FetchSequencer, InterestToken
from ticket_sync.sla import SlaClient
from ticket_sync.store import TicketStore

logger = logging.getLogger(__name__)

SLICES = ("list", "dashboard", "current", "history", "stats", "reference")
_REFERENCE_KINDS = ("statuses", "priorities", "departments", "types")


@dataclass(frozen=True)
class FetchResult:
    """What happened to one fetch: applied, or discarded (and why)."""
    slice: str
    seq: int
    applied: bool
    reason: str = "applied"
    skipped: int = 0          # malformed records dropped during normalisation


@dataclass(frozen=True)
class DashboardScope:
    """Whose tickets the dashboard shows.  Agents see their own queue."""
    role: str = "admin"
    user_id: Optional[Any] = None

    @property
    def assignee(self) -> Any:
        if self.role == "agent" and self.user_id is not None:
            return self.user_id
        return None


class TicketSync:
    def __init__(
        self,
        api: TicketApiClient | None = None,
        *,
        store: TicketStore | None = None,
        reference: ReferenceDataCache | None = None,
    ) -> None:
        self._owns_api = api is None
        self.api = api or TicketApiClient()
        self.sla = SlaClient(self.api)
        self.store = store or TicketStore()
        self.reference = reference or ReferenceDataCache()
        self.coordinator = MutationCoordinator(self.api, self.sla, self.store, self.reference)
        self._sequencers = {name: FetchSequencer(name) for name in SLICES}
        self._tokens: weakref.WeakSet[InterestToken] = weakref.WeakSet()

    # ── Lifecycle ────────────────────────────────────────────────────

    def init(self) -> None:
        self.store.init()
        logger.info("Ticket sync started")

    async def dispose(self) -> None:
        for token in list(self._tokens):
            token.cancel()
        self._tokens.clear()
        self.store.dispose()
        self.reference.clear()
        if self._owns_api:
            await self.api.aclose()
        logger.info("Ticket sync stopped")

    def interest(self, label: str = "") -> InterestToken:
        """New token for a view; cancelled automatically on :meth:`dispose`.

        Only live, still-interested tokens are tracked.
        """
        for stale in [t for t in self._tokens if not t.interested]:
            self._tokens.discard(stale)
        token = InterestToken(label)
        self._tokens.add(token)
        return token

    def release(self, token: InterestToken) -> None:
        token.cancel()
        self._tokens.discard(token)

    def sequencer(self, slice_name: str) -> FetchSequencer:
        return self._sequencers[slice_name]

    # ── Sequencing gate ──────────────────────────────────────────────

    def _gate(self, slice_name: str, seq: int, token: InterestToken | None) -> FetchResult | None:
        """``None`` if the result may be written, else the discard outcome."""
        if token is not None and not token.interested:
            logger.debug("Discarding %s fetch #%d: %r no longer interested",
                         slice_name, seq, token)
            return FetchResult(slice_name, seq, applied=False, reason="cancelled")
        sequencer = self._sequencers[slice_name]
        if not sequencer.is_current(seq):
            logger.debug("Discarding stale %s fetch #%d (already applied #%d)",
                         slice_name, seq, sequencer.last_applied)
            return FetchResult(slice_name, seq, applied=False, reason="stale")
        sequencer.mark_applied(seq)
        return None

    def _tickets(self, rows: Iterable[Any]) -> tuple[list[Ticket], int]:
        tickets: list[Ticket] = []
        skipped = 0
        snapshot = self.reference.snapshot
        for raw in rows:
            try:
                tickets.append(normalize_ticket(raw, snapshot))
            except NormalizationError as exc:
                skipped += 1
                logger.warning("Skipping malformed ticket in list response: %s", exc)
        return tickets, skipped

    # ── Reference data ───────────────────────────────────────────────

    async def load_reference_data(self) -> FetchResult:
        """Fetch every lookup list and swap in one complete snapshot.

        The agent directory is optional (it may be restricted to admins);
        without it bare assignee ids simply stay unnamed.
        """
        seq = self._sequencers["reference"].issue()
        lists = await asyncio.gather(*(self.api.get_reference(k) for k in _REFERENCE_KINDS))
        try:
            raw_agents = await self.api.list_agents()
        except NetworkError as exc:
            logger.warning("Agent directory unavailable: %s", exc)
            raw_agents = []

        data = ReferenceData(
            **{kind: normalize_reference_items(raw) for kind, raw in zip(_REFERENCE_KINDS, lists)},
            agents=normalize_agents(raw_agents),
        )
        discarded = self._gate("reference", seq, None)
        if discarded is not None:
            return discarded
        self.reference.replace(data)
        return FetchResult("reference", seq, applied=True)

    # ── Ticket collections ───────────────────────────────────────────

    async def fetch_tickets(
        self,
        page: int = DEFAULT_PAGE,
        limit: int = DEFAULT_LIMIT,
        *,
        token: InterestToken | None = None,
    ) -> FetchResult:
        """Load one list-view page into ``all()`` and the list pagination."""
        if page < 1 or limit < 1:
            raise ValidationError(f"Invalid page request: page={page}, limit={limit}")
        seq = self._sequencers["list"].issue()
        rows, raw_pagination = await self.api.list_tickets(page, limit)
        tickets, skipped = self._tickets(rows)
        pagination = normalize_pagination(raw_pagination, page=page, limit=limit, count=len(tickets))

        discarded = self._gate("list", seq, token)
        if discarded is not None:
            return discarded
        self.store.replace_all(tickets, pagination)
        logger.info("Loaded %d tickets (page %d/%d)", len(tickets), pagination.page,
                    pagination.total_pages)
        return FetchResult("list", seq, applied=True, skipped=skipped)

    async def fetch_dashboard(
        self,
        page: int = DEFAULT_PAGE,
        limit: int = DASHBOARD_LIMIT,
        *,
        scope: DashboardScope | None = None,
        token: InterestToken | None = None,
    ) -> FetchResult:
        """Open tickets for the dashboard; never touches the list view."""
        if page < 1 or limit < 1:
            raise ValidationError(f"Invalid page request: page={page}, limit={limit}")
        scope = scope or DashboardScope()
        seq = self._sequencers["dashboard"].issue()
        rows, raw_pagination = await self.api.list_tickets(
            page, limit, is_open=True, assignee=scope.assignee,
        )
        tickets, skipped = self._tickets(rows)
        pagination = normalize_pagination(raw_pagination, page=page, limit=limit, count=len(tickets))

        discarded = self._gate("dashboard", seq, token)
        if discarded is not None:
            return discarded
        self.store.replace_dashboard(tickets, pagination)
        return FetchResult("dashboard", seq, applied=True, skipped=skipped)

    async def fetch_stats(
        self,
        *,
        scope: DashboardScope | None = None,
        token: InterestToken | None = None,
    ) -> FetchResult:
        """Recompute dashboard counters over every page of the scope."""
        scope = scope or DashboardScope()
        seq = self._sequencers["stats"].issue()
        tickets: list[Ticket] = []
        skipped = 0
        page = DEFAULT_PAGE
        while True:
            rows, raw_pagination = await self.api.list_tickets(
                page, STATS_FETCH_LIMIT, assignee=scope.assignee,
            )
            batch, dropped = self._tickets(rows)
            tickets.extend(batch)
            skipped += dropped
            pagination = normalize_pagination(
                raw_pagination, page=page, limit=STATS_FETCH_LIMIT, count=len(rows),
            )
            if not rows or page >= pagination.total_pages:
                break
            page += 1
        stats = compute_stats(tickets)
        logger.debug("Stats computed over %d tickets in %d page(s)", len(tickets), page)

        discarded = self._gate("stats", seq, token)
        if discarded is not None:
            return discarded
        self.store.replace_stats(stats)
        return FetchResult("stats", seq, applied=True, skipped=skipped)

    # ── Current ticket ───────────────────────────────────────────────

    async def fetch_ticket(
        self, ticket_id: str, *, token: InterestToken | None = None,
    ) -> FetchResult:
        if not ticket_id or not str(ticket_id).strip():
            raise ValidationError("Cannot load ticket: ticket id is required")
        seq = self._sequencers["current"].issue()
        raw = await self.api.get_ticket(ticket_id)
        detail = normalize_ticket_detail(raw, self.reference.snapshot)

        discarded = self._gate("current", seq, token)
        if discarded is not None:
            return discarded
        self.store.set_current(detail)
        return FetchResult("current", seq, applied=True)

    async def fetch_history(
        self, ticket_id: str, *, token: InterestToken | None = None,
    ) -> FetchResult:
        """Merge the change log into the current detail if it is still open."""
        if not ticket_id or not str(ticket_id).strip():
            raise ValidationError("Cannot load history: ticket id is required")
        seq = self._sequencers["history"].issue()
        raw_entries = await self.api.get_history(ticket_id)
        history = normalize_history(raw_entries, self.reference.snapshot)

        discarded = self._gate("history", seq, token)
        if discarded is not None:
            return discarded
        merged = self.store.merge_current({"id": ticket_id, "history": history})
        return FetchResult("history", seq, applied=merged,
                           reason="applied" if merged else "not current")
