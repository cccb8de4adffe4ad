"""SLA collaborator — pause / resume timers and (re)target policies.

The due-date engine lives on the server; this module only calls it.  All
calls are best-effort secondary effects from the coordinator's point of
view, but failures are still raised here so the caller decides how to
report them.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping

from ticket_sync.client import TicketApiClient, unwrap
from ticket_sync.config import (
    SLA_AUTO_ASSIGN_PATH,
    SLA_PAUSE_PATH,
    SLA_RECALCULATE_PATH,
    SLA_RESUME_PATH,
)

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"\d+")


def sla_ticket_id(ticket_id: Any) -> str:
    """Numeric part of a ticket id (``"TIK-1001"`` → ``"1001"``)."""
    if isinstance(ticket_id, int):
        return str(ticket_id)
    match = _DIGITS.search(str(ticket_id))
    return match.group() if match else str(ticket_id)


def _succeeded(payload: Any) -> bool:
    if not isinstance(payload, Mapping):
        return False
    return payload.get("success") is True or payload.get("status") == "success"


class SlaClient:
    def __init__(self, api: TicketApiClient) -> None:
        self._api = api

    async def pause(self, ticket_id: Any) -> bool:
        path = SLA_PAUSE_PATH.format(ticket_id=sla_ticket_id(ticket_id))
        ok = _succeeded(await self._api.request("POST", path))
        logger.info("SLA pause for ticket %s → %s", ticket_id, "ok" if ok else "rejected")
        return ok

    async def resume(self, ticket_id: Any) -> bool:
        path = SLA_RESUME_PATH.format(ticket_id=sla_ticket_id(ticket_id))
        ok = _succeeded(await self._api.request("POST", path))
        logger.info("SLA resume for ticket %s → %s", ticket_id, "ok" if ok else "rejected")
        return ok

    async def auto_assign(self, ticket_id: Any) -> Mapping[str, Any] | None:
        """Pick the SLA policy matching the ticket's current priority."""
        path = SLA_AUTO_ASSIGN_PATH.format(ticket_id=sla_ticket_id(ticket_id))
        return self._policy(await self._api.request("POST", path))

    async def recalculate(self, ticket_id: Any) -> Mapping[str, Any] | None:
        path = SLA_RECALCULATE_PATH.format(ticket_id=sla_ticket_id(ticket_id))
        return self._policy(await self._api.request("POST", path))

    @staticmethod
    def _policy(payload: Any) -> Mapping[str, Any] | None:
        if not isinstance(payload, Mapping):
            return None
        data = payload.get("data")
        if isinstance(data, Mapping):
            return data
        if payload.get("success") is False:
            return None
        return unwrap(payload, "slaPolicyTicket") or payload
