"""Reference data cache — statuses, priorities, departments, types, agents.

Loaded once per session.  The cache holds a single immutable
:class:`ReferenceData` snapshot; a refresh swaps the whole snapshot so an
in-flight normaliser never sees a half-updated lookup table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Union

from ticket_sync.schemas import ReferenceItem, UserRef

logger = logging.getLogger(__name__)

ReferenceKind = Literal["statuses", "priorities", "departments", "types"]


@dataclass(frozen=True)
class ReferenceData:
    statuses:    tuple[ReferenceItem, ...] = ()
    priorities:  tuple[ReferenceItem, ...] = ()
    departments: tuple[ReferenceItem, ...] = ()
    types:       tuple[ReferenceItem, ...] = ()
    agents:      tuple[UserRef, ...] = ()

    def items(self, kind: ReferenceKind) -> tuple[ReferenceItem, ...]:
        return getattr(self, kind)

    def lookup(
        self,
        kind: ReferenceKind,
        key: Union[str, int, None],
        name: str | None = None,
    ) -> ReferenceItem | None:
        """Match by id first, then case-insensitively by name.

        Without an explicit *name* the *key* itself is tried as a name, so
        a bare ``"Pending"`` resolves even when ids are numeric.
        """
        items = self.items(kind)
        if key is not None:
            wanted = str(key)
            for item in items:
                if item.id == wanted:
                    return item
        candidate = name if name is not None else key
        if candidate is None:
            return None
        lowered = str(candidate).strip().lower()
        for item in items:
            if item.name.lower() == lowered:
                return item
        return None

    def find_agent(self, agent_id: Union[int, str, None]) -> UserRef | None:
        if agent_id is None:
            return None
        wanted = str(agent_id)
        for agent in self.agents:
            if str(agent.id) == wanted or agent.source_id == wanted:
                return agent
        return None


class ReferenceDataCache:
    """Session-scoped holder of the current :class:`ReferenceData`."""

    def __init__(self, data: ReferenceData | None = None) -> None:
        self._data = data or ReferenceData()
        self._loaded = data is not None

    @property
    def snapshot(self) -> ReferenceData:
        return self._data

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def replace(self, data: ReferenceData) -> None:
        """Swap in a complete new snapshot (never a partial patch)."""
        self._data = data
        self._loaded = True
        logger.info(
            "Reference data loaded: %d statuses, %d priorities, %d departments, "
            "%d types, %d agents",
            len(data.statuses), len(data.priorities), len(data.departments),
            len(data.types), len(data.agents),
        )

    def clear(self) -> None:
        self._data = ReferenceData()
        self._loaded = False
