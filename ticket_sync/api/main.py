"""
ticket_sync/api/main.py — UI-facing HTTP surface over one TicketSync session

Fetch triggers (explicit, nothing is loaded lazily):
    POST   /sync/reference              → reload statuses / priorities / … / agents
    POST   /sync/tickets                → list page        (?page&limit)
    POST   /sync/dashboard              → dashboard page   (?page&limit&role&user_id)
    POST   /sync/tickets/{id}           → current detail
    POST   /sync/tickets/{id}/history   → merge history into current detail
    POST   /sync/stats                  → dashboard counters

Views (read-only, straight from the store):
    GET    /views/tickets | /views/filtered | /views/search?q= | /views/dashboard
    GET    /views/current | /views/stats | /views/tickets/{id}
    PUT    /views/filters               DELETE /views/filters

Mutations (→ {data, warnings}):
    POST   /tickets                     PUT /tickets/{id}         DELETE /tickets/{id}
    POST   /tickets/{id}/comments       POST /tickets/{id}/attachments
    POST   /tickets/{id}/status         POST /tickets/{id}/priority
    POST   /tickets/{id}/assign         POST /tickets/{id}/sla/pause|resume

Push:
    GET    /events                      → text/event-stream, one event per store change

Run API:      uvicorn ticket_sync.api.main:app --reload
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Union

from fastapi import FastAPI, File, HTTPException, Query, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ticket_sync.config import DASHBOARD_LIMIT, DEFAULT_LIMIT, DEFAULT_PAGE, LOG_LEVEL
from ticket_sync.coordinator import MutationResult
from ticket_sync.errors import (
    NetworkError,
    NormalizationError,
    TicketSyncError,
    ValidationError,
)
from ticket_sync.schemas import TicketFilters
from ticket_sync.store import StoreEvent, TicketStore
from ticket_sync.sync import DashboardScope, FetchResult, TicketSync

# ── logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)
logger = logging.getLogger(__name__)

EVENT_QUEUE_SIZE = 100


# ── Request schemas ───────────────────────────────────────────────────────────

class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateTicketRequest(_Body):
    subject:       str = Field(..., min_length=1, examples=["Cannot log in"])
    description:   str = ""
    status_id:     Optional[str] = None
    priority_id:   Optional[str] = None
    department_id: Optional[str] = None
    type_id:       Optional[str] = None
    requester_id:  Optional[Union[int, str]] = None
    assignee_id:   Optional[Union[int, str]] = None
    tags:          list[str] = Field(default_factory=list)


class UpdateTicketRequest(_Body):
    subject:       Optional[str] = Field(None, min_length=1)
    description:   Optional[str] = None
    status_id:     Optional[str] = None
    priority_id:   Optional[str] = None
    department_id: Optional[str] = None
    type_id:       Optional[str] = None
    assignee_id:   Optional[Union[int, str]] = None
    tags:          Optional[list[str]] = None


class CommentRequest(_Body):
    content:     str = Field(..., examples=["Reset link sent"])
    is_internal: bool = False


class StatusRequest(BaseModel):
    status: str = Field(..., examples=["pending"])


class PriorityRequest(BaseModel):
    priority: str = Field(..., examples=["high"])


class AssignRequest(_Body):
    agent_id: Optional[Union[int, str]] = None     # null unassigns


class FiltersRequest(_Body):
    status:     Optional[str] = None
    priority:   Optional[str] = None
    department: Optional[str] = None
    assignee:   Optional[str] = None
    date_from:  Optional[str] = None
    date_to:    Optional[str] = None
    search:     Optional[str] = None


# ── Global state ──────────────────────────────────────────────────────────────

_state: dict = {
    "sync_factory": TicketSync,     # overridable before startup (tests)
    "sync": None,
    "started_at": None,
}


def _sync() -> TicketSync:
    sync = _state["sync"]
    if sync is None:
        raise HTTPException(status_code=503, detail="Ticket sync not initialised")
    return sync


def _dump(model: Optional[BaseModel]) -> Optional[dict]:
    return model.model_dump(by_alias=True) if model is not None else None


def _dump_all(models) -> list[dict]:
    return [m.model_dump(by_alias=True) for m in models]


def _mutation(result: MutationResult) -> dict:
    value = result.value
    if isinstance(value, BaseModel):
        data: Any = _dump(value)
    elif isinstance(value, list):
        data = _dump_all(value)
    else:
        data = value
    return {"data": data, "warnings": result.notices}


def _fetched(result: FetchResult) -> dict:
    return asdict(result)


# ── lifespan ──────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    sync = _state["sync_factory"]()
    sync.init()
    _state["sync"] = sync
    _state["started_at"] = datetime.now(timezone.utc)

    # Reference data is best loaded up front, but the API still serves
    # (with placeholder colours) if the backend is down at startup.
    try:
        await sync.load_reference_data()
    except TicketSyncError as exc:
        logger.warning("Reference data not loaded at startup: %s (POST /sync/reference to retry)", exc)

    yield

    await sync.dispose()
    _state["sync"] = None


# ── App ───────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Ticket Sync",
    description=(
        "Client-side ticket state synchronisation: normalised tickets, "
        "paginated list and dashboard views, and mutations with SLA side effects."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error mapping ─────────────────────────────────────────────────────────────

@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=422,
        content={"error": "Validation Error", "message": exc.user_message},
    )


@app.exception_handler(NormalizationError)
async def _normalization_error(request: Request, exc: NormalizationError) -> JSONResponse:
    logger.error("%s %s: malformed backend data: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"error": "Bad Gateway", "message": exc.user_message, "field": exc.field},
    )


@app.exception_handler(NetworkError)
async def _network_error(request: Request, exc: NetworkError) -> JSONResponse:
    code = 404 if exc.status_code == 404 else status.HTTP_502_BAD_GATEWAY
    return JSONResponse(
        status_code=code,
        content={
            "error": "Not Found" if code == 404 else "Bad Gateway",
            "message": exc.user_message,
            "backendStatus": exc.status_code,
        },
    )


# ── Health ────────────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    started = _state["started_at"]
    uptime = (datetime.now(timezone.utc) - started).total_seconds() if started else 0
    sync = _state["sync"]
    return {
        "status": "ok" if sync is not None else "starting",
        "reference_loaded": bool(sync and sync.reference.is_loaded),
        "tickets_loaded": len(sync.store.all()) if sync else 0,
        "uptime_seconds": round(uptime, 1),
    }


# ── Fetch triggers ────────────────────────────────────────────────────────────

@app.post("/sync/reference")
async def sync_reference():
    return _fetched(await _sync().load_reference_data())


@app.post("/sync/tickets")
async def sync_tickets(
    page: int = Query(DEFAULT_PAGE, ge=1),
    limit: int = Query(DEFAULT_LIMIT, ge=1),
):
    return _fetched(await _sync().fetch_tickets(page, limit))


@app.post("/sync/dashboard")
async def sync_dashboard(
    page: int = Query(DEFAULT_PAGE, ge=1),
    limit: int = Query(DASHBOARD_LIMIT, ge=1),
    role: str = "admin",
    user_id: Optional[str] = None,
):
    scope = DashboardScope(role=role, user_id=user_id)
    return _fetched(await _sync().fetch_dashboard(page, limit, scope=scope))


@app.post("/sync/tickets/{ticket_id}")
async def sync_ticket(ticket_id: str):
    return _fetched(await _sync().fetch_ticket(ticket_id))


@app.post("/sync/tickets/{ticket_id}/history")
async def sync_history(ticket_id: str):
    return _fetched(await _sync().fetch_history(ticket_id))


@app.post("/sync/stats")
async def sync_stats(role: str = "admin", user_id: Optional[str] = None):
    scope = DashboardScope(role=role, user_id=user_id)
    return _fetched(await _sync().fetch_stats(scope=scope))


# ── Views ─────────────────────────────────────────────────────────────────────

@app.get("/views/tickets")
async def view_tickets():
    store = _sync().store
    return {"tickets": _dump_all(store.all()), "pagination": _dump(store.list_pagination)}


@app.get("/views/filtered")
async def view_filtered():
    store = _sync().store
    return {
        "tickets": _dump_all(store.filtered()),
        "filters": _dump(store.filters),
        "search": store.search_query,
    }


@app.get("/views/search")
async def view_search(q: str = ""):
    return {"tickets": _dump_all(_sync().store.searched(q)), "query": q}


@app.get("/views/dashboard")
async def view_dashboard():
    store = _sync().store
    return {
        "tickets": _dump_all(store.dashboard_page()),
        "pagination": _dump(store.dashboard_pagination),
    }


@app.get("/views/current")
async def view_current():
    return {"ticket": _dump(_sync().store.current)}


@app.get("/views/stats")
async def view_stats():
    return {"stats": _dump(_sync().store.stats)}


@app.get("/views/tickets/{ticket_id}")
async def view_ticket(ticket_id: str):
    ticket = _sync().store.by_id(ticket_id)
    if ticket is None:
        raise HTTPException(status_code=404, detail=f"Ticket {ticket_id} is not loaded")
    return {"ticket": _dump(ticket)}


@app.put("/views/filters")
async def put_filters(req: FiltersRequest):
    store = _sync().store
    fields = req.model_dump(exclude={"search"})
    store.set_filters(TicketFilters(**fields))
    if req.search is not None:
        store.set_search(req.search)
    return {"filters": _dump(store.filters), "search": store.search_query}


@app.delete("/views/filters")
async def clear_filters():
    store = _sync().store
    store.clear_filters()
    return {"filters": _dump(store.filters), "search": store.search_query}


# ── Mutations ─────────────────────────────────────────────────────────────────

@app.post("/tickets", status_code=201)
async def create_ticket(req: CreateTicketRequest):
    body = req.model_dump(by_alias=True, exclude_none=True)
    return _mutation(await _sync().coordinator.create(body))


@app.put("/tickets/{ticket_id}")
async def update_ticket(ticket_id: str, req: UpdateTicketRequest):
    changes = req.model_dump(by_alias=True, exclude_none=True)
    return _mutation(await _sync().coordinator.update(ticket_id, changes))


@app.delete("/tickets/{ticket_id}")
async def delete_ticket(ticket_id: str):
    return _mutation(await _sync().coordinator.delete(ticket_id))


@app.post("/tickets/{ticket_id}/comments", status_code=201)
async def add_comment(ticket_id: str, req: CommentRequest):
    result = await _sync().coordinator.add_comment(ticket_id, req.content, req.is_internal)
    return _mutation(result)


@app.post("/tickets/{ticket_id}/attachments", status_code=201)
async def add_attachment(ticket_id: str, file: UploadFile = File(...)):
    content = await file.read()
    result = await _sync().coordinator.add_attachment(
        ticket_id,
        file.filename or "",
        content,
        file.content_type or "application/octet-stream",
    )
    return _mutation(result)


@app.post("/tickets/{ticket_id}/status")
async def change_status(ticket_id: str, req: StatusRequest):
    return _mutation(await _sync().coordinator.change_status(ticket_id, req.status))


@app.post("/tickets/{ticket_id}/priority")
async def change_priority(ticket_id: str, req: PriorityRequest):
    return _mutation(await _sync().coordinator.change_priority(ticket_id, req.priority))


@app.post("/tickets/{ticket_id}/assign")
async def assign_ticket(ticket_id: str, req: AssignRequest):
    return _mutation(await _sync().coordinator.assign(ticket_id, req.agent_id))


@app.post("/tickets/{ticket_id}/sla/pause")
async def pause_sla(ticket_id: str):
    return _mutation(await _sync().coordinator.pause_sla(ticket_id))


@app.post("/tickets/{ticket_id}/sla/resume")
async def resume_sla(ticket_id: str):
    return _mutation(await _sync().coordinator.resume_sla(ticket_id))


# ── Push ──────────────────────────────────────────────────────────────────────

def _format_event(event: StoreEvent) -> str:
    return f"event: {event.slice}\ndata: {json.dumps(asdict(event))}\n\n"


async def event_stream(store: TicketStore, queue_size: int = EVENT_QUEUE_SIZE) -> AsyncIterator[str]:
    """Server-sent events for every store change; ends when the store is disposed."""
    queue: asyncio.Queue[StoreEvent] = asyncio.Queue(maxsize=queue_size)

    def _push(event: StoreEvent) -> None:
        if _is_closing(event) and queue.full():
            queue.get_nowait()
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event stream lagging, dropped %s", event)

    if not store.active:
        return
    unsubscribe = store.subscribe(_push)
    try:
        while True:
            event = await queue.get()
            yield _format_event(event)
            if _is_closing(event):
                logger.info("Store disposed, closing event stream")
                return
    finally:
        unsubscribe()


def _is_closing(event: StoreEvent) -> bool:
    return event.slice == "store" and event.reason == "disposed"


@app.get("/events")
async def events():
    return StreamingResponse(event_stream(_sync().store), media_type="text/event-stream")
