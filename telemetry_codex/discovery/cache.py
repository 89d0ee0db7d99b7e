"""Per-session LRU query cache with time-to-live expiry.

The cache is constructed for one discovery session and handed to the engine;
it is never shared between sessions or stored at module level.
"""

from __future__ import annotations

import json
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from telemetry_codex.discovery.models import QueryResult


def make_cache_key(query: str, options: dict[str, Any] | None = None) -> str:
    """Stable key for a query and its execution options."""
    normalized = " ".join(query.split())
    if not options:
        return normalized
    return f"{normalized}|{json.dumps(options, sort_keys=True, default=str)}"


@dataclass
class QueryCache:
    """Bounded LRU of query results.

    Args:
        max_size: Maximum number of entries before the least recently used
            entry is evicted
        ttl: Seconds an entry stays valid
        clock: Monotonic time source (injectable for tests)
    """

    max_size: int = 1000
    ttl: float = 300.0
    clock: Callable[[], float] = time.monotonic
    hits: int = 0
    misses: int = 0
    _entries: OrderedDict[str, tuple[float, QueryResult]] = field(
        default_factory=OrderedDict, repr=False
    )

    def get(self, key: str) -> QueryResult | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        stored_at, result = entry
        if self.clock() - stored_at > self.ttl:
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return result

    def set(self, key: str, result: QueryResult) -> None:
        if self.max_size <= 0:
            return
        self._entries[key] = (self.clock(), result)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
