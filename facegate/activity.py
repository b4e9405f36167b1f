from __future__ import annotations

"""Bounded, thread-safe activity log shown on the review page."""

import logging
import threading
from collections import deque
from typing import List

logger = logging.getLogger(__name__)


class ActivityLog:
    """Append-only log lines; the oldest entries fall off past `max_entries`."""

    def __init__(self, max_entries: int = 300) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._lines: deque[str] = deque(maxlen=max_entries)

    def add(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)
        logger.info("%s", line)

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)
