"""
Result cache for precision searches.

Entries are valid only while they are younger than the TTL and the
workspace fingerprint is unchanged. Only confident results are stored, and
capacity is enforced by evicting the oldest-inserted entry (FIFO, not LRU).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from .types import SearchResult

logger = logging.getLogger(__name__)

REQUEST_PREFIX_CHARS = 100


def make_cache_key(
    query: str,
    fingerprint: str,
    active_path: Optional[str],
    heuristic_files: Iterable[str],
    symbol_name: Optional[str] = None,
) -> str:
    """Composite key of request prefix, fingerprint, active file, heuristic set and symbol."""
    return "|".join([
        query[:REQUEST_PREFIX_CHARS],
        fingerprint,
        active_path or "",
        ",".join(sorted(heuristic_files)),
        symbol_name or "",
    ])


@dataclass(frozen=True)
class CacheEntry:
    timestamp: float
    fingerprint: str
    result: SearchResult
    request_signature: str


class SearchCache:
    """
    In-process cache owned by one search system instance.

    Concurrent writers for the same key overwrite each other; the last
    write wins.
    """

    def __init__(
        self,
        max_size: int = 100,
        ttl_seconds: float = 300.0,
        precision_threshold: float = 0.8,
        clock: Callable[[], float] = time.time,
    ):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.precision_threshold = precision_threshold
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def keys(self):
        return list(self._entries)

    def get(self, key: str, fingerprint: str) -> Optional[CacheEntry]:
        """Return the entry for ``key`` if it is fresh and matches ``fingerprint``."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.clock() - entry.timestamp >= self.ttl_seconds:
            logger.debug("Cache entry expired for %s", entry.request_signature)
            del self._entries[key]
            return None
        if entry.fingerprint != fingerprint:
            logger.debug("Workspace changed since %s was cached", entry.request_signature)
            del self._entries[key]
            return None
        return entry

    def put(self, key: str, fingerprint: str, result: SearchResult, request_signature: str = "") -> bool:
        """
        Store ``result`` if its confidence reaches the threshold.

        Returns True when the result was stored.
        """
        if result.metrics.confidence < self.precision_threshold:
            logger.debug(
                "Not caching result with confidence %.2f (threshold %.2f)",
                result.metrics.confidence,
                self.precision_threshold,
            )
            return False

        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            logger.debug("Evicted oldest cache entry")

        self._entries[key] = CacheEntry(
            timestamp=self.clock(),
            fingerprint=fingerprint,
            result=result,
            request_signature=request_signature,
        )
        return True

    def clear(self) -> None:
        self._entries.clear()
