"""Error taxonomy for the ticket sync layer.

Primary failures are raised.  :class:`SecondaryEffectError` is the
exception: it is attached to an otherwise successful mutation result
instead of being raised.
"""

from __future__ import annotations


class TicketSyncError(Exception):
    """Base class for every error surfaced by this package."""

    @property
    def user_message(self) -> str:
        return str(self)


class ValidationError(TicketSyncError):
    """Bad or missing required input (e.g. empty ticket id on update)."""


class NetworkError(TicketSyncError):
    """Transport failure or non-2xx backend response."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NormalizationError(TicketSyncError):
    """Server payload is missing a mandatory field."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class SecondaryEffectError(TicketSyncError):
    """A non-primary step of a composite mutation failed.

    The primary intent already succeeded, so the message shown to the
    user is a softer notice than the one for a primary failure.
    """

    def __init__(
        self,
        step: str,
        cause: BaseException | None = None,
        *,
        primary: str = "Ticket updated",
        notice: str | None = None,
    ) -> None:
        self.step = step
        self.cause = cause
        self.primary = primary
        self.notice = notice or f"{step} failed"
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{step} failed{detail}")

    @property
    def user_message(self) -> str:
        return f"{self.primary}, but {self.notice}"
