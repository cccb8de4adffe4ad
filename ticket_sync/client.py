"""Async client for the ticket REST backend.

Wraps a single ``httpx.AsyncClient``.  Every transport failure or non-2xx
response becomes a :class:`NetworkError`; no call is retried here and
timeouts are the httpx client's.  Responses may arrive bare or wrapped as
``{"status": "success", "data": {...}}`` — the helpers below unwrap both.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping
from urllib.parse import quote

import httpx

from ticket_sync.config import (
    AGENT_DIRECTORY_PATH,
    AGENT_ROLE,
    API_BASE_URL,
    API_TOKEN,
    REFERENCE_ENDPOINTS,
    REQUEST_TIMEOUT_SECONDS,
)
from ticket_sync.errors import NetworkError, NormalizationError

logger = logging.getLogger(__name__)


# ── envelope helpers ──────────────────────────────────────────────────────────

def unwrap(payload: Any, key: str) -> Any:
    """``payload[key]`` or ``payload["data"][key]``, else ``None``."""
    if not isinstance(payload, Mapping):
        return None
    if payload.get(key) is not None:
        return payload[key]
    data = payload.get("data")
    if isinstance(data, Mapping):
        return data.get(key)
    return None


def unwrap_list(payload: Any, key: str) -> list:
    if isinstance(payload, list):
        return payload
    value = unwrap(payload, key)
    if value is None and isinstance(payload, Mapping) and isinstance(payload.get("data"), list):
        value = payload["data"]
    return list(value) if isinstance(value, list) else []


def unwrap_record(payload: Any, key: str) -> Mapping[str, Any]:
    """Single record under *key*, or the payload itself when it is one."""
    value = unwrap(payload, key)
    if isinstance(value, Mapping):
        return value
    if isinstance(payload, Mapping):
        data = payload.get("data")
        if isinstance(data, Mapping) and "id" in data:
            return data
        if "id" in payload:
            return payload
    raise NormalizationError(f"response carries no {key}", field=key)


def _path_id(value: Any) -> str:
    return quote(str(value), safe="")


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, Mapping):
        return str(body.get("message") or body.get("error") or body.get("detail") or body)
    return str(body)


# ── client ────────────────────────────────────────────────────────────────────

class TicketApiClient:
    """One method per backend endpoint; returns raw (un-normalised) payloads."""

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        *,
        token: str = API_TOKEN,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "TicketApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ── transport ────────────────────────────────────────────────────

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        files: Any = None,
        data: Mapping[str, Any] | None = None,
    ) -> Any:
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            resp = await self._http.request(
                method, path, params=clean_params or None, json=json, files=files, data=data,
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        if resp.is_error:
            detail = _error_detail(resp)
            logger.warning("%s %s → HTTP %d: %s", method, path, resp.status_code, detail)
            raise NetworkError(
                f"{method} {path} returned HTTP {resp.status_code}: {detail}",
                status_code=resp.status_code,
            )
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise NetworkError(
                f"{method} {path} returned invalid JSON", status_code=resp.status_code,
            ) from exc

    # ── tickets ──────────────────────────────────────────────────────

    async def list_tickets(
        self,
        page: int,
        limit: int,
        *,
        is_open: bool | None = None,
        assignee: Any = None,
    ) -> tuple[list, Mapping[str, Any] | None]:
        """``GET /tickets`` → ``(raw_tickets, raw_pagination)``."""
        params = {
            "page": page,
            "limit": limit,
            "isOpen": str(is_open).lower() if is_open is not None else None,
            "assignee": assignee,
        }
        payload = await self.request("GET", "/tickets", params=params)
        return unwrap_list(payload, "tickets"), unwrap(payload, "pagination")

    async def get_ticket(self, ticket_id: str) -> Mapping[str, Any]:
        payload = await self.request("GET", f"/tickets/{_path_id(ticket_id)}")
        return unwrap_record(payload, "ticket")

    async def create_ticket(self, body: Mapping[str, Any]) -> Mapping[str, Any]:
        payload = await self.request("POST", "/tickets", json=dict(body))
        return unwrap_record(payload, "ticket")

    async def update_ticket(self, ticket_id: str, body: Mapping[str, Any]) -> Mapping[str, Any]:
        payload = await self.request("PUT", f"/tickets/{_path_id(ticket_id)}", json=dict(body))
        return unwrap_record(payload, "ticket")

    async def delete_ticket(self, ticket_id: str) -> None:
        await self.request("DELETE", f"/tickets/{_path_id(ticket_id)}")

    async def add_comment(
        self, ticket_id: str, content: str, is_internal: bool = False,
    ) -> Mapping[str, Any]:
        payload = await self.request(
            "POST",
            f"/tickets/{_path_id(ticket_id)}/comments",
            json={"content": content, "isInternal": is_internal},
        )
        return unwrap_record(payload, "comment")

    async def add_attachment(
        self,
        ticket_id: str,
        filename: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> list:
        """Multipart upload; the transport itself is opaque to this layer."""
        payload = await self.request(
            "POST",
            f"/tickets/{_path_id(ticket_id)}/attachments",
            files={"attachments": (filename, content, content_type)},
        )
        attachments = unwrap_list(payload, "attachments")
        if attachments:
            return attachments
        return [unwrap_record(payload, "attachment")]

    async def get_history(self, ticket_id: str) -> list:
        payload = await self.request("GET", f"/tickets/{_path_id(ticket_id)}/history")
        return unwrap_list(payload, "history")

    # ── reference data / users ───────────────────────────────────────

    async def get_reference(self, kind: str) -> list:
        path, key = REFERENCE_ENDPOINTS[kind]
        payload = await self.request("GET", path)
        return unwrap_list(payload, key)

    async def list_agents(self) -> list:
        payload = await self.request("GET", AGENT_DIRECTORY_PATH, params={"role": AGENT_ROLE})
        return unwrap_list(payload, "users")

    async def get_user(self, user_id: Any) -> Mapping[str, Any]:
        payload = await self.request("GET", f"{AGENT_DIRECTORY_PATH}/{_path_id(user_id)}")
        return unwrap_record(payload, "user")
