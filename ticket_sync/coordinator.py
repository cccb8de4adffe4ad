"""Mutation coordinator — one async operation per user intent.

Every operation follows the same shape:

1. validate preconditions (``ValidationError``)
2. call the backend (``NetworkError`` on failure, store untouched)
3. normalise the response (``NormalizationError``, store untouched)
4. write the normalised result to the store — synchronously, with no
   await between normalisation and the write

Composite operations (status, priority, assignment) run their secondary
effects *after* the primary write.  A secondary failure never rolls back
the primary change; it is attached to the result as a
:class:`SecondaryEffectError`.  Nothing is retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Generic, Mapping, TypeVar

from ticket_sync.client import TicketApiClient
from ticket_sync.errors import (
    NetworkError,
    NormalizationError,
    SecondaryEffectError,
    ValidationError,
)
from ticket_sync.normalizer import (
    normalize_agent_id,
    normalize_attachment,
    normalize_comment,
    normalize_detail_sequences,
    normalize_ticket,
)
from ticket_sync.projections import is_pending_status
from ticket_sync.reference import ReferenceDataCache, ReferenceKind
from ticket_sync.schemas import Attachment, Comment, ReferenceItem, Ticket
from ticket_sync.sla import SlaClient
from ticket_sync.store import TicketStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class MutationResult(Generic[T]):
    """Primary outcome plus any degraded secondary effects."""
    value: T
    warnings: list[SecondaryEffectError] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)

    @property
    def notices(self) -> list[str]:
        return [w.user_message for w in self.warnings]


def _require_id(ticket_id: Any, action: str) -> str:
    text = str(ticket_id).strip() if ticket_id is not None else ""
    if not text:
        raise ValidationError(f"Cannot {action}: ticket id is required")
    return text


class MutationCoordinator:
    def __init__(
        self,
        api: TicketApiClient,
        sla: SlaClient,
        store: TicketStore,
        reference: ReferenceDataCache,
    ) -> None:
        self._api = api
        self._sla = sla
        self._store = store
        self._reference = reference

    # ── Primary call wrapper ─────────────────────────────────────────

    async def _call(self, action: str, coro):
        """Await a backend call, re-raising failures with an actionable message."""
        try:
            return await coro
        except NetworkError as exc:
            logger.error("Failed to %s: %s", action, exc)
            raise NetworkError(f"Failed to {action}", status_code=exc.status_code) from exc
        except NormalizationError as exc:
            logger.error("Failed to %s: malformed response (%s)", action, exc)
            raise NormalizationError(f"Failed to {action}: {exc}", field=exc.field) from exc

    def _normalize(self, action: str, raw: Mapping[str, Any]) -> Ticket:
        try:
            return normalize_ticket(raw, self._reference.snapshot)
        except NormalizationError as exc:
            logger.error("Failed to %s: malformed ticket (%s)", action, exc)
            raise

    def _apply_ticket(self, ticket: Ticket, raw: Mapping[str, Any]) -> None:
        self._store.upsert_in_collections(ticket)
        partial = {name: getattr(ticket, name) for name in Ticket.model_fields}
        partial.update(normalize_detail_sequences(raw, self._reference.snapshot))
        self._store.merge_current(partial)

    def _resolve(self, kind: ReferenceKind, key: Any, label: str) -> ReferenceItem:
        if key is None or not str(key).strip():
            raise ValidationError(f"A {label} is required")
        item = self._reference.snapshot.lookup(kind, str(key))
        if item is None:
            raise ValidationError(f"Unknown {label}: {key!r}")
        return item

    # ── CRUD ─────────────────────────────────────────────────────────

    async def create(self, payload: Mapping[str, Any]) -> MutationResult[Ticket]:
        """Create server-side; the ticket enters the store only from the response."""
        subject = str(payload.get("subject") or "").strip()
        if not subject:
            raise ValidationError("Cannot create ticket: subject is required")
        raw = await self._call("create ticket", self._api.create_ticket(payload))
        ticket = self._normalize("create ticket", raw)
        self._store.upsert_in_collections(ticket)
        logger.info("Created ticket %s", ticket.id)
        return MutationResult(ticket)

    async def update(self, ticket_id: str, changes: Mapping[str, Any]) -> MutationResult[Ticket]:
        ticket_id = _require_id(ticket_id, "update ticket")
        if not changes:
            raise ValidationError("Cannot update ticket: no changes given")
        raw = await self._call("update ticket", self._api.update_ticket(ticket_id, changes))
        ticket = self._normalize("update ticket", raw)
        self._apply_ticket(ticket, raw)
        logger.info("Updated ticket %s (%s)", ticket.id, ", ".join(changes))
        return MutationResult(ticket)

    async def delete(self, ticket_id: str) -> MutationResult[str]:
        ticket_id = _require_id(ticket_id, "delete ticket")
        await self._call("delete ticket", self._api.delete_ticket(ticket_id))
        self._store.remove(ticket_id)
        logger.info("Deleted ticket %s", ticket_id)
        return MutationResult(ticket_id)

    async def add_comment(
        self, ticket_id: str, content: str, is_internal: bool = False,
    ) -> MutationResult[Comment]:
        ticket_id = _require_id(ticket_id, "add comment")
        if not content or not content.strip():
            raise ValidationError("Cannot add comment: content is empty")
        raw = await self._call(
            "add comment", self._api.add_comment(ticket_id, content, is_internal),
        )
        comment = normalize_comment(raw, self._reference.snapshot)
        current = self._store.current
        if current is not None and current.id == ticket_id:
            self._store.merge_current({
                "comments": [*current.comments, comment],
                "last_activity": comment.created_at,
            })
        return MutationResult(comment)

    async def add_attachment(
        self,
        ticket_id: str,
        filename: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> MutationResult[list[Attachment]]:
        ticket_id = _require_id(ticket_id, "add attachment")
        if not filename or not content:
            raise ValidationError("Cannot add attachment: file is empty")
        raw_items = await self._call(
            "upload attachment",
            self._api.add_attachment(ticket_id, filename, content, content_type),
        )
        attachments = [normalize_attachment(raw) for raw in raw_items]
        current = self._store.current
        if current is not None and current.id == ticket_id:
            self._store.merge_current({"attachments": [*current.attachments, *attachments]})
        return MutationResult(attachments)

    # ── Composite operations ─────────────────────────────────────────

    async def change_status(self, ticket_id: str, status: str) -> MutationResult[Ticket]:
        """Update status; pause / resume the SLA timer when "pending" flips."""
        ticket_id = _require_id(ticket_id, "update status")
        new_status = self._resolve("statuses", status, "status")
        previous = self._store.by_id(ticket_id)
        was_pending = is_pending_status(previous.status if previous else None)

        raw = await self._call(
            "update status", self._api.update_ticket(ticket_id, {"statusId": new_status.id}),
        )
        ticket = self._normalize("update status", raw)
        self._apply_ticket(ticket, raw)

        result = MutationResult(ticket)
        now_pending = is_pending_status(ticket.status)
        if now_pending and not was_pending:
            await self._sla_timer(ticket_id, pause=True, result=result)
        elif was_pending and not now_pending:
            await self._sla_timer(ticket_id, pause=False, result=result)
        return result

    async def _sla_timer(self, ticket_id: str, *, pause: bool, result: MutationResult) -> None:
        step = "SLA pause" if pause else "SLA resume"
        call = self._sla.pause if pause else self._sla.resume
        try:
            ok = await call(ticket_id)
            cause = None if ok else RuntimeError("SLA service rejected the request")
        except Exception as exc:
            cause = exc
        if cause is not None:
            logger.warning("%s for ticket %s failed: %s", step, ticket_id, cause)
            result.warnings.append(SecondaryEffectError(
                step, cause, primary="Status updated", notice="SLA timer update failed",
            ))

    async def change_priority(self, ticket_id: str, priority: str) -> MutationResult[Ticket]:
        """Update priority, then retarget the SLA policy (primary, then alternate endpoint)."""
        ticket_id = _require_id(ticket_id, "update priority")
        new_priority = self._resolve("priorities", priority, "priority")

        raw = await self._call(
            "update priority",
            self._api.update_ticket(ticket_id, {"priorityId": new_priority.id}),
        )
        ticket = self._normalize("update priority", raw)
        self._apply_ticket(ticket, raw)

        result = MutationResult(ticket)
        cause: BaseException | None = None
        for name in ("auto_assign", "recalculate"):
            try:
                if await getattr(self._sla, name)(ticket_id):
                    logger.info("SLA policy retargeted for ticket %s via %s",
                                ticket_id, name)
                    return result
                cause = RuntimeError(f"{name} returned no policy")
            except Exception as exc:
                cause = exc
            logger.warning("SLA %s for ticket %s failed: %s", name, ticket_id, cause)

        result.warnings.append(SecondaryEffectError(
            "SLA policy retarget", cause,
            primary="Priority updated", notice="SLA policy update failed",
        ))
        return result

    async def assign(self, ticket_id: str, agent_id: Any) -> MutationResult[Ticket]:
        """Assign (or unassign with ``None``), moving the department along if known."""
        ticket_id = _require_id(ticket_id, "assign ticket")
        assignee_id = normalize_agent_id(agent_id)
        body: dict[str, Any] = {"assigneeId": assignee_id}

        if assignee_id is not None:
            department_id = await self._agent_department(assignee_id)
            if department_id is not None:
                body["departmentId"] = department_id

        raw = await self._call("assign ticket", self._api.update_ticket(ticket_id, body))
        ticket = self._normalize("assign ticket", raw)
        self._apply_ticket(ticket, raw)
        logger.info("Assigned ticket %s to %s", ticket_id, assignee_id)
        return MutationResult(ticket)

    async def _agent_department(self, agent_id: Any) -> Any:
        """Department id from the agent's user detail, or ``None``.

        Lookup failures are expected (permissions, stale directory) and
        only mean the department stays unchanged.
        """
        try:
            user = await self._api.get_user(agent_id)
        except (NetworkError, NormalizationError) as exc:
            logger.info("No department for agent %s (%s), assigning without it", agent_id, exc)
            return None
        department = user.get("department")
        if isinstance(department, Mapping):
            return department.get("id")
        if department is not None:
            return department
        department_id = user.get("departmentId", user.get("department_id"))
        if department_id is None:
            departments = user.get("departments")
            if isinstance(departments, list) and departments:
                first = departments[0]
                department_id = first.get("id") if isinstance(first, Mapping) else first
        return department_id

    # ── SLA as a primary intent ──────────────────────────────────────

    async def pause_sla(self, ticket_id: str) -> MutationResult[bool]:
        ticket_id = _require_id(ticket_id, "pause SLA")
        return MutationResult(await self._call("pause SLA", self._sla.pause(ticket_id)))

    async def resume_sla(self, ticket_id: str) -> MutationResult[bool]:
        ticket_id = _require_id(ticket_id, "resume SLA")
        return MutationResult(await self._call("resume SLA", self._sla.resume(ticket_id)))
