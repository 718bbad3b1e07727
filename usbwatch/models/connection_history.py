from __future__ import annotations

import logging
from collections import deque
from typing import Deque, List

from .history_entry import HistoryEntry

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000


class ConnectionHistory:
    """Bounded, newest-first log of lifecycle transitions."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        # appendleft on a bounded deque silently evicts from the right (oldest).
        self._entries: Deque[HistoryEntry] = deque(maxlen=capacity)

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        self._entries.appendleft(entry)
        logger.debug("history append: %s %s", entry.event_type.value, entry.device_id)
        return entry

    def recent(self, limit: int = 50) -> List[HistoryEntry]:
        if limit <= 0:
            return []
        entries: List[HistoryEntry] = []
        for entry in self._entries:
            if len(entries) >= limit:
                break
            entries.append(entry)
        return entries

    def last(self) -> HistoryEntry | None:
        return self._entries[0] if self._entries else None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
