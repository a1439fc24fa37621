"""Byte-bounded LRU cache for knowledge-base snapshots.

A snapshot holds the metadata and every row of one base, so that retrieval
and the ``query_database`` tool read a base at most once per auto-responder
run or test-console session.  Entries are keyed with :func:`kb_cache_key`.

Sizes are estimated from the JSON encoding of the entry (dataclasses are
converted field by field first); an entry larger than the whole budget is
not cached at all.

>>> cache = LRUCache(max_bytes=20 * 1024 * 1024)
>>> cache.put(kb_cache_key("org1", "kb1"), snapshot)
>>> cache.get(kb_cache_key("org1", "kb1"))
>>> cache.invalidate(kb_cache_key("org1", "kb1"))
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
from collections import OrderedDict
from typing import Any, NamedTuple

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 20 * 1024 * 1024


def kb_cache_key(org_id: str, kb_id: str) -> str:
    """Cache key for one knowledge base of one organization."""
    return f"kb:{org_id}:{kb_id}"


def estimate_bytes(value: Any) -> int:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)
    try:
        encoded = json.dumps(value, default=str, ensure_ascii=False)
    except (TypeError, ValueError, OverflowError):
        encoded = str(value)
    return len(encoded.encode("utf-8"))


class _Entry(NamedTuple):
    value: Any
    size: int


class LRUCache:
    """Least-recently-used cache bounded by the estimated size of its entries."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self._max_bytes = max_bytes
        self._used = 0
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        """Cached value, marked most recently used, or ``None``."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return entry.value

    def put(self, key: str, value: Any) -> None:
        size = estimate_bytes(value)
        if size > self._max_bytes:
            logger.warning(
                "Cache entry %s (%d bytes) exceeds the %d byte budget; not cached",
                key, size, self._max_bytes,
            )
            return

        with self._lock:
            self._drop(key)
            while self._entries and self._used + size > self._max_bytes:
                evicted = next(iter(self._entries))
                self._drop(evicted)
                logger.debug("Cache evicted %s", evicted)
            self._entries[key] = _Entry(value, size)
            self._used += size

    def invalidate(self, key: str) -> bool:
        """Forget *key*.  ``True`` if it was cached."""
        with self._lock:
            return self._drop(key)

    def _drop(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._used -= entry.size
        return True

    @property
    def current_bytes(self) -> int:
        return self._used

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    def has(self, key: str) -> bool:
        """Membership test that leaves the recency order alone."""
        return key in self._entries
