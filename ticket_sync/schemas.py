"""Pydantic schemas for the canonical, normalised ticket entities.

Attribute names are snake_case; ``model_dump(by_alias=True)`` produces the
camelCase shape the UI layer consumes.  Every entity is frozen: the store
swaps instances, it never edits them in place.
"""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ticket_sync.config import PLACEHOLDER_COLOR


class _Canonical(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# ── reference data ────────────────────────────────────────────────────────────

class ReferenceItem(_Canonical):
    """Status, priority, department or ticket type."""
    id:    str
    name:  str
    color: str = PLACEHOLDER_COLOR


class UserRef(_Canonical):
    id:         Union[int, str]
    first_name: str = ""
    last_name:  str = ""
    email:      Optional[str] = None
    avatar:     Optional[str] = None
    # original identifier when ``id`` was derived from it (lossy mapping)
    source_id:  Optional[str] = None

    @property
    def display_name(self) -> str:
        full = f"{self.first_name} {self.last_name}".strip()
        return full or self.email or str(self.id)


# ── tickets ───────────────────────────────────────────────────────────────────

class Comment(_Canonical):
    id:          str
    content:     str
    created_at:  str
    is_internal: bool = False
    user:        UserRef


class Attachment(_Canonical):
    id:            str
    filename:      str
    original_name: str
    file_path:     str = ""
    size:          int = 0
    created_at:    str


class HistoryEntry(_Canonical):
    """One field-change record from ``GET /tickets/{id}/history``."""
    field_name: str
    old_value:  Any = None
    new_value:  Any = None
    created_at: str
    user:       Optional[UserRef] = None


class Ticket(_Canonical):
    id:            str
    subject:       str
    description:   str = ""
    status:        ReferenceItem
    priority:      ReferenceItem
    department:    Optional[ReferenceItem] = None
    type:          Optional[ReferenceItem] = None
    requester:     UserRef
    assignee:      Optional[UserRef] = None
    created_at:    str
    updated_at:    str
    last_activity: str
    due_date:      Optional[str] = None
    tags:          list[str] = Field(default_factory=list)


class TicketDetail(Ticket):
    """Detail variant — only the current ticket carries these sequences."""
    comments:    list[Comment] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    history:     list[HistoryEntry] = Field(default_factory=list)


# ── views ─────────────────────────────────────────────────────────────────────

class PaginationState(_Canonical):
    page:        int = Field(1, ge=1)
    limit:       int = Field(10, gt=0)
    total_count: int = Field(0, ge=0)
    total_pages: int = Field(1, ge=1)


class TicketFilters(_Canonical):
    """Independent predicates, AND-combined.  ``None`` means "any"."""
    status:     Optional[str] = None
    priority:   Optional[str] = None
    department: Optional[str] = None
    assignee:   Optional[str] = None    # user id or "unassigned"
    date_from:  Optional[str] = None
    date_to:    Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return all(v is None for v in self.model_dump().values())


class TicketStats(_Canonical):
    total:         int = 0
    open:          int = 0
    pending:       int = 0
    resolved:      int = 0
    high_priority: int = 0
