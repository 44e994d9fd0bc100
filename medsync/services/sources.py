"""In-memory source adapter used for development and demos."""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class StaticSourceAdapter:
    """
    Serves fixed medication lists per (entity, system). A system registered
    with an exception raises it on every fetch, which is how an unreachable
    upstream is simulated.
    """

    def __init__(self, records: dict[tuple[str, str], list[dict[str, Any]] | Exception] | None = None):
        self._records = dict(records or {})
        self.calls: list[tuple[str, str]] = []

    def set_records(self, entity_id: str, system: str, records: list[dict[str, Any]] | Exception) -> None:
        self._records[(entity_id, system)] = records

    async def fetch_records(self, entity_id: str, system: str) -> list[dict[str, Any]]:
        self.calls.append((entity_id, system))
        records = self._records.get((entity_id, system))
        if isinstance(records, Exception):
            raise records
        if records is None:
            logger.debug("No records configured for %s/%s", entity_id, system)
            return []
        return [dict(r) for r in records]
