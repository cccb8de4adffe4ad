"""Fetch sequencing and interest tokens.

Each store slice owns a :class:`FetchSequencer`.  A fetch takes a number
when it is *issued*; its result is applied only if that number is newer
than the last one applied, so an old response that returns late never
clobbers a newer one.

An :class:`InterestToken` is checked right before the store write.  The
request itself keeps running (the backend call may be uncancellable); only
its result is dropped.
"""

from __future__ import annotations

import itertools
import logging

logger = logging.getLogger(__name__)


class FetchSequencer:
    """Monotonic issue / apply bookkeeping for one store slice."""

    def __init__(self, slice_name: str) -> None:
        self.slice_name = slice_name
        self._counter = itertools.count(1)
        self._last_issued = 0
        self._last_applied = 0

    def issue(self) -> int:
        self._last_issued = next(self._counter)
        return self._last_issued

    def is_current(self, seq: int) -> bool:
        """``True`` if a result tagged *seq* may still be applied."""
        return seq > self._last_applied

    def mark_applied(self, seq: int) -> None:
        self._last_applied = max(self._last_applied, seq)

    @property
    def last_issued(self) -> int:
        return self._last_issued

    @property
    def last_applied(self) -> int:
        return self._last_applied


class InterestToken:
    """Still-interested flag owned by a view (detail page, dashboard)."""

    def __init__(self, label: str = "") -> None:
        self.label = label
        self._cancelled = False

    def cancel(self) -> None:
        if not self._cancelled:
            logger.debug("Interest token %r cancelled", self.label)
        self._cancelled = True

    @property
    def interested(self) -> bool:
        return not self._cancelled

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"InterestToken({self.label!r}, {state})"
