"""In-process reference implementation of the memory store.

The service only needs ``insert`` and ``query``; any backend exposing the
same two methods (and raising StoreError on failure) can be plugged in.
"""
from __future__ import annotations
import itertools
import threading
from typing import Any, Dict, List

from .errors import utc_now_iso


class StoreError(Exception):
    """Raised by a store backend when a read or write fails."""


class MemoryStore:
    """Thread-safe append-only list of memory records."""

    def __init__(self):
        self._records: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def insert(self, record: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Stores ``record`` and returns the stored rows.

        Args:
            record: A mapping with ``memory`` and ``memory_id``.

        Raises:
            StoreError: If a required field is missing.
        """
        if "memory" not in record or "memory_id" not in record:
            raise StoreError("record requires 'memory' and 'memory_id'")
        with self._lock:
            row = {
                "id": next(self._ids),
                "memory": record["memory"],
                "memory_id": record["memory_id"],
                "created_at": utc_now_iso(),
            }
            self._records.append(row)
        return [dict(row)]

    def query(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Returns up to ``limit`` records, newest first."""
        with self._lock:
            newest = self._records[-limit:] if limit > 0 else []
            return [dict(r) for r in reversed(newest)]
