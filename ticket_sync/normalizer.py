"""Normaliser — raw server records → canonical entities.

Pure functions.  They fail closed only on identity fields (ticket ``id`` /
``subject`` / creation and update times, comment ``content``, attachment
file name) and fail open everywhere else: a single bad reference must not
hide an otherwise displayable ticket.

Reference fields arrive either as a bare id or as an embedded object.  The
shape is classified once into :data:`Reference` and resolved here; nothing
past this module ever sees a bare id.
"""

from __future__ import annotations

import logging
import math
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, TypeVar, Union

import pydantic

from ticket_sync.config import PLACEHOLDER_COLOR, UNKNOWN_USER_NAME
from ticket_sync.errors import NormalizationError
from ticket_sync.reference import ReferenceData, ReferenceKind
from ticket_sync.schemas import (
    Attachment,
    Comment,
    HistoryEntry,
    PaginationState,
    ReferenceItem,
    Ticket,
    TicketDetail,
    UserRef,
)

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"\d+")
_EMPTY_REFERENCE = ReferenceData()

T = TypeVar("T")


# ── Reference tagged union ───────────────────────────────────────────────

@dataclass(frozen=True)
class RawId:
    """A reference delivered as a bare id (or name) string."""
    value: str


@dataclass(frozen=True)
class EmbeddedRef:
    """A reference delivered as an object, possibly without ``color``."""
    id: str | None
    name: str | None
    color: str | None


Reference = Union[EmbeddedRef, RawId]

# canonical field → (reference kind, accepted id-only keys)
_REFERENCE_FIELDS: dict[str, tuple[ReferenceKind, tuple[str, ...]]] = {
    "status":     ("statuses", ("statusId", "status_id")),
    "priority":   ("priorities", ("priorityId", "priority_id")),
    "department": ("departments", ("departmentId", "department_id")),
    "type":       ("types", ("typeId", "type_id", "ticketType", "ticket_type")),
}


# ── Small helpers ────────────────────────────────────────────────────────

def _pick(raw: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """First non-``None`` value among *keys* (camelCase listed first)."""
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return default


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _color(value: Any) -> str | None:
    """Colour string, or ``None`` when the server sent something else."""
    if isinstance(value, str) and value.strip():
        return value
    if value not in (None, ""):
        logger.debug("Ignoring non-string colour %r", value)
    return None


def _timestamp(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return _text(value)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@contextmanager
def _schema_errors(what: str, raw: Any):
    """Re-raise pydantic failures on server data as :class:`NormalizationError`."""
    try:
        yield
    except pydantic.ValidationError as exc:
        loc = exc.errors()[0]["loc"]
        field = ".".join(str(part) for part in loc) or None
        ident = raw.get("id") if isinstance(raw, Mapping) else None
        raise NormalizationError(
            f"Malformed {what} {ident!r}: {exc.error_count()} invalid field(s)", field=field,
        ) from exc


def _normalize_many(
    records: Iterable[Any] | None,
    fn: Callable[[Any], T],
    what: str,
) -> list[T]:
    """Normalise each record, skipping (and logging) malformed ones."""
    out: list[T] = []
    for record in records or ():
        try:
            out.append(fn(record))
        except NormalizationError as exc:
            logger.warning("Skipping malformed %s: %s", what, exc)
    return out


# ── Agent / user ids ─────────────────────────────────────────────────────

def split_agent_id(value: Any) -> tuple[int | str | None, str | None]:
    """Return ``(numeric_or_raw_id, source_id)`` for an agent identifier.

    Numeric strings become ints.  Other strings containing digits (UUIDs,
    ``"TIK-1001"``) fall back to their first run of digits; the original
    string is returned as *source_id* so the lossy mapping stays visible.
    """
    if value is None or isinstance(value, bool):
        return None, None
    if isinstance(value, int):
        return value, None
    if isinstance(value, float) and value.is_integer():
        return int(value), None
    text = str(value).strip()
    if not text:
        return None, None
    if text.isdigit():
        return int(text), None
    match = _DIGITS.search(text)
    if match:
        logger.debug("Agent id %r mapped to numeric %s (digit extraction)",
                     text, match.group())
        return int(match.group()), text
    return text, None


def normalize_agent_id(value: Any) -> int | str | None:
    return split_agent_id(value)[0]


def _placeholder_user() -> UserRef:
    return UserRef(id="unknown", first_name=UNKNOWN_USER_NAME)


def normalize_user(
    raw: Any,
    reference: ReferenceData | None = None,
) -> UserRef | None:
    """Embedded user object or bare id → :class:`UserRef` (``None`` if absent)."""
    if raw is None or raw == "":
        return None
    reference = reference or _EMPTY_REFERENCE

    if not isinstance(raw, Mapping):
        user_id, source_id = split_agent_id(raw)
        known = reference.find_agent(raw) or reference.find_agent(user_id)
        if known is not None:
            return known
        if user_id is None:
            return None
        return UserRef(id=user_id, source_id=source_id)

    user_id, derived_source = split_agent_id(_pick(raw, "id", "userId", "user_id"))
    first = _pick(raw, "firstName", "first_name")
    last = _pick(raw, "lastName", "last_name")
    if first is None and last is None:
        full = _pick(raw, "name", "userName", "user_name", default="")
        first, _, last = str(full).strip().partition(" ")
    if not (first or last or raw.get("email")):
        # id-only object; name it from the directory when possible
        known = reference.find_agent(user_id)
        if known is not None:
            return known
    return UserRef(
        id=user_id if user_id is not None else "unknown",
        first_name=str(first or ""),
        last_name=str(last or ""),
        email=_pick(raw, "email"),
        avatar=_pick(raw, "avatar", "avatarUrl", "avatar_url"),
        source_id=_pick(raw, "sourceId", "source_id", default=derived_source),
    )


def normalize_agents(raw_users: Iterable[Any] | None) -> tuple[UserRef, ...]:
    agents = []
    for raw in raw_users or ():
        user = normalize_user(raw)
        if user is not None:
            agents.append(user)
    return tuple(agents)


# ── Reference resolution ─────────────────────────────────────────────────

def classify_reference(value: Any) -> Reference | None:
    if value is None or value == "":
        return None
    if isinstance(value, Mapping):
        ref_id = value.get("id")
        name = value.get("name")
        if ref_id is None and name is None:
            return None
        return EmbeddedRef(
            id=str(ref_id) if ref_id is not None else None,
            name=str(name) if name is not None else None,
            color=_color(value.get("color")),
        )
    return RawId(str(value))


def resolve_reference(
    ref: Reference,
    kind: ReferenceKind,
    reference: ReferenceData,
) -> ReferenceItem:
    if isinstance(ref, RawId):
        match = reference.lookup(kind, ref.value)
        if match is not None:
            return match
        logger.debug("Unresolved %s reference %r — using placeholder", kind, ref.value)
        return ReferenceItem(id=ref.value, name=ref.value, color=PLACEHOLDER_COLOR)

    ref_id = ref.id if ref.id is not None else ref.name
    name = ref.name if ref.name is not None else ref.id
    if ref.color:
        return ReferenceItem(id=ref_id, name=name, color=ref.color)

    match = reference.lookup(kind, ref.id, name=ref.name)
    if match is None:
        return ReferenceItem(id=ref_id, name=name, color=PLACEHOLDER_COLOR)
    return ReferenceItem(
        id=ref.id if ref.id is not None else match.id,
        name=ref.name if ref.name is not None else match.name,
        color=match.color,
    )


def _reference_field(
    raw: Mapping[str, Any],
    field: str,
    reference: ReferenceData,
) -> ReferenceItem | None:
    kind, id_keys = _REFERENCE_FIELDS[field]
    value = raw.get(field)
    if value is None or value == "":
        value = _pick(raw, *id_keys)
    ref = classify_reference(value)
    if ref is None:
        return None
    return resolve_reference(ref, kind, reference)


def normalize_reference_items(raw_items: Iterable[Any] | None) -> tuple[ReferenceItem, ...]:
    """Lookup list from ``GET /tickets/<kind>`` → reference items."""
    items = []
    for raw in raw_items or ():
        if not isinstance(raw, Mapping) or raw.get("id") is None:
            logger.warning("Skipping reference entry without id: %r", raw)
            continue
        name = raw.get("name")
        items.append(ReferenceItem(
            id=str(raw["id"]),
            name=str(name) if name is not None else str(raw["id"]),
            color=_color(raw.get("color")) or PLACEHOLDER_COLOR,
        ))
    return tuple(items)


# ── Tags ─────────────────────────────────────────────────────────────────

def normalize_tags(raw_tags: Any) -> list[str]:
    if not raw_tags:
        return []
    if isinstance(raw_tags, (str, Mapping)):
        raw_tags = [raw_tags]
    elif not isinstance(raw_tags, (list, tuple, set, frozenset)):
        logger.debug("Ignoring malformed tags %r", raw_tags)
        return []
    tags = []
    for tag in raw_tags:
        value = tag.get("name") if isinstance(tag, Mapping) else tag
        text = str(value).strip() if value is not None else ""
        if text:
            tags.append(text)
    return tags


# ── Tickets ──────────────────────────────────────────────────────────────

def normalize_ticket(
    raw: Mapping[str, Any],
    reference: ReferenceData | None = None,
) -> Ticket:
    """Normalise one raw ticket (list row or detail payload)."""
    with _schema_errors("ticket", raw):
        return Ticket(**_ticket_fields(raw, reference or _EMPTY_REFERENCE))


def normalize_ticket_detail(
    raw: Mapping[str, Any],
    reference: ReferenceData | None = None,
    *,
    now: str | None = None,
) -> TicketDetail:
    """Normalise a ``GET /tickets/{id}`` payload, including its sequences."""
    reference = reference or _EMPTY_REFERENCE
    with _schema_errors("ticket detail", raw):
        fields = _ticket_fields(raw, reference)
        fields.update(normalize_detail_sequences(raw, reference, now=now))
        return TicketDetail(**fields)


def normalize_detail_sequences(
    raw: Mapping[str, Any],
    reference: ReferenceData | None = None,
    *,
    now: str | None = None,
) -> dict[str, list]:
    """Comments / attachments / history present in *raw* (absent keys omitted).

    Used for partial merges: only sequences the server actually sent
    replace what the current detail already holds.
    """
    reference = reference or _EMPTY_REFERENCE
    out: dict[str, list] = {}
    if raw.get("comments") is not None:
        out["comments"] = _normalize_many(
            raw["comments"], lambda c: normalize_comment(c, reference, now=now), "comment",
        )
    if raw.get("attachments") is not None:
        out["attachments"] = _normalize_many(
            raw["attachments"], lambda a: normalize_attachment(a, now=now), "attachment",
        )
    if raw.get("history") is not None:
        out["history"] = _normalize_many(
            raw["history"], lambda h: normalize_history_entry(h, reference, now=now), "history entry",
        )
    return out


def _ticket_fields(raw: Mapping[str, Any], reference: ReferenceData) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        raise NormalizationError(f"ticket payload is not an object: {raw!r}")

    ticket_id = _text(_pick(raw, "id", "ticketId", "ticket_id"))
    if ticket_id is None:
        raise NormalizationError("ticket is missing 'id'", field="id")
    subject = _text(_pick(raw, "subject", "title"))
    if subject is None:
        raise NormalizationError(f"ticket {ticket_id} is missing 'subject'", field="subject")
    created_at = _timestamp(_pick(raw, "createdAt", "created_at"))
    if created_at is None:
        raise NormalizationError(f"ticket {ticket_id} is missing 'createdAt'", field="createdAt")
    updated_at = _timestamp(_pick(raw, "updatedAt", "updated_at"))
    if updated_at is None:
        raise NormalizationError(f"ticket {ticket_id} is missing 'updatedAt'", field="updatedAt")
    last_activity = (
        _timestamp(_pick(raw, "lastActivity", "last_activity"))
        or updated_at
        or _now_iso()
    )

    status = _reference_field(raw, "status", reference)
    priority = _reference_field(raw, "priority", reference)
    requester = normalize_user(
        _pick(raw, "requester", "requesterId", "requester_id"), reference,
    )
    assignee = normalize_user(
        _pick(raw, "assignee", "assigneeId", "assignee_id"), reference,
    )
    return {
        "id": ticket_id,
        "subject": subject,
        "description": str(_pick(raw, "description", default="")),
        "status": status or _unknown_reference("status"),
        "priority": priority or _unknown_reference("priority"),
        "department": _reference_field(raw, "department", reference),
        "type": _reference_field(raw, "type", reference),
        "requester": requester or _placeholder_user(),
        "assignee": assignee,
        "created_at": created_at,
        "updated_at": updated_at,
        "last_activity": last_activity,
        "due_date": _timestamp(_pick(raw, "dueDate", "due_date")),
        "tags": normalize_tags(raw.get("tags")),
    }


def _unknown_reference(field: str) -> ReferenceItem:
    logger.debug("Ticket without %s — using placeholder", field)
    return ReferenceItem(id="unknown", name="Unknown", color=PLACEHOLDER_COLOR)


# ── Comments, attachments, history ───────────────────────────────────────

def normalize_comment(
    raw: Mapping[str, Any],
    reference: ReferenceData | None = None,
    *,
    now: str | None = None,
) -> Comment:
    if not isinstance(raw, Mapping):
        raise NormalizationError(f"comment payload is not an object: {raw!r}")
    comment_id = _text(raw.get("id"))
    if comment_id is None:
        raise NormalizationError("comment is missing 'id'", field="id")
    content = _text(_pick(raw, "content", "body", "text"))
    if content is None:
        raise NormalizationError(f"comment {comment_id} is missing 'content'", field="content")

    user = normalize_user(raw.get("user"), reference)
    if user is None and _pick(raw, "userId", "user_id") is not None:
        user = normalize_user({
            "id": _pick(raw, "userId", "user_id"),
            "name": _pick(raw, "userName", "user_name", default=""),
        }, reference)
    return Comment(
        id=comment_id,
        content=content,
        created_at=_timestamp(_pick(raw, "createdAt", "created_at")) or now or _now_iso(),
        is_internal=bool(_pick(raw, "isInternal", "is_internal", default=False)),
        user=user or _placeholder_user(),
    )


def normalize_attachment(raw: Mapping[str, Any], *, now: str | None = None) -> Attachment:
    if not isinstance(raw, Mapping):
        raise NormalizationError(f"attachment payload is not an object: {raw!r}")
    attachment_id = _text(raw.get("id"))
    if attachment_id is None:
        raise NormalizationError("attachment is missing 'id'", field="id")
    filename = _text(_pick(raw, "filename", "fileName", "file_name"))
    original = _text(_pick(raw, "originalName", "original_name")) or filename
    if original is None:
        raise NormalizationError(
            f"attachment {attachment_id} has no file name", field="filename",
        )
    return Attachment(
        id=attachment_id,
        filename=filename or original,
        original_name=original,
        file_path=str(_pick(raw, "filePath", "file_path", default="")),
        size=_to_int(_pick(raw, "size", "fileSize", "file_size"), 0),
        created_at=_timestamp(_pick(raw, "createdAt", "created_at")) or now or _now_iso(),
    )


def normalize_history_entry(
    raw: Mapping[str, Any],
    reference: ReferenceData | None = None,
    *,
    now: str | None = None,
) -> HistoryEntry:
    if not isinstance(raw, Mapping):
        raise NormalizationError(f"history payload is not an object: {raw!r}")
    field_name = _text(_pick(raw, "fieldName", "field_name", "field"))
    if field_name is None:
        raise NormalizationError("history entry is missing 'field_name'", field="field_name")
    return HistoryEntry(
        field_name=field_name,
        old_value=_pick(raw, "oldValue", "old_value"),
        new_value=_pick(raw, "newValue", "new_value"),
        created_at=_timestamp(_pick(raw, "createdAt", "created_at")) or now or _now_iso(),
        user=normalize_user(raw.get("user"), reference),
    )


def normalize_history(
    raw_entries: Iterable[Any] | None,
    reference: ReferenceData | None = None,
) -> list[HistoryEntry]:
    return _normalize_many(
        raw_entries, lambda h: normalize_history_entry(h, reference), "history entry",
    )


# ── Pagination ───────────────────────────────────────────────────────────

def normalize_pagination(
    raw: Mapping[str, Any] | None,
    *,
    page: int,
    limit: int,
    count: int,
) -> PaginationState:
    """Server ``{page, limit, total, totalPages}`` → :class:`PaginationState`.

    A missing block falls back to the requested page/limit and the number
    of tickets actually received.
    """
    raw = raw or {}
    page = max(1, _to_int(raw.get("page"), page))
    limit = max(1, _to_int(raw.get("limit"), limit))
    total = max(0, _to_int(_pick(raw, "totalCount", "total_count", "total"), count))
    pages = _to_int(_pick(raw, "totalPages", "total_pages"), math.ceil(total / limit))
    return PaginationState(page=page, limit=limit, total_count=total, total_pages=max(1, pages))
