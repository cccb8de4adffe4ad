"""Centralised configuration — single source of truth for the sync layer."""

from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()

# ── Backend connection ──────────────────────────────────────────────────
API_BASE_URL = os.getenv("TICKET_API_URL", "http://localhost:5000/api")
API_TOKEN = os.getenv("TICKET_API_TOKEN", "")      # empty = no auth header
REQUEST_TIMEOUT_SECONDS = float(os.getenv("TICKET_API_TIMEOUT", "10"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ── Pagination defaults ─────────────────────────────────────────────────
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
DASHBOARD_LIMIT = int(os.getenv("DASHBOARD_LIMIT", "5"))
STATS_FETCH_LIMIT = int(os.getenv("STATS_FETCH_LIMIT", "500"))

# ── Normalisation ───────────────────────────────────────────────────────
PLACEHOLDER_COLOR = "#808080"
UNKNOWN_USER_NAME = "Unknown"

# ── Status / priority name sets (compared lower-cased) ──────────────────
#    "pending"-like statuses pause the SLA timer.
PENDING_STATUS_NAMES: frozenset[str] = frozenset({
    "pending", "on hold", "waiting on customer",
})
CLOSED_STATUS_NAMES: frozenset[str] = frozenset({"resolved", "closed"})
IN_PROGRESS_STATUS_NAMES: frozenset[str] = frozenset({"in progress", "pending"})
HIGH_PRIORITY_NAMES: frozenset[str] = frozenset({"high", "urgent", "critical"})

# ── Reference data endpoints → payload key ──────────────────────────────
REFERENCE_ENDPOINTS: dict[str, tuple[str, str]] = {
    "statuses": ("/tickets/statuses", "statuses"),
    "priorities": ("/tickets/priorities", "priorities"),
    "departments": ("/tickets/departments", "departments"),
    "types": ("/tickets/types", "ticketTypes"),
}
AGENT_DIRECTORY_PATH = "/users"
AGENT_ROLE = "agent"

# ── SLA collaborator (ticket id is sent as its numeric part) ────────────
SLA_PAUSE_PATH = "/sla/pause/{ticket_id}"
SLA_RESUME_PATH = "/sla/resume/{ticket_id}"
SLA_AUTO_ASSIGN_PATH = "/sla/auto-assign/{ticket_id}"
SLA_RECALCULATE_PATH = "/sla/recalculate/{ticket_id}"
