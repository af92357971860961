"""
In-process cache for the player-facing puzzle projection.

Keyed by civil day. The store drops a day's entry whenever one of its
pairs changes, so the TTL only bounds how long an idle worker keeps a
projection around; a cold process computes the same answer.

Every invalidation also bumps the day's generation. A reader takes the
generation before querying and hands it back to ``put``, which refuses
the write if a mutation landed in between.
"""

import threading
import time
from typing import Any, Dict, List, Optional, Tuple

PUZZLE_TTL_SECONDS = 600


class PuzzleCache:
    """TTL map from day key to its display projection. Thread safe."""

    def __init__(self, ttl_seconds: float = PUZZLE_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, Tuple[float, List[dict]]] = {}
        self._generations: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._invalidations = 0

    def get(self, day: str) -> Optional[List[dict]]:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(day)
            if entry is not None and entry[0] > now:
                self._hits += 1
                return entry[1]
            if entry is not None:
                del self._entries[day]
            self._misses += 1
            return None

    def generation(self, day: str) -> int:
        with self._lock:
            return self._generations.get(day, 0)

    def put(self, day: str, pairs: List[dict], ttl_seconds: Optional[float] = None,
            generation: Optional[int] = None) -> bool:
        """Store ``pairs``; skipped when ``generation`` is no longer current."""
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            if generation is not None and generation != self._generations.get(day, 0):
                return False
            self._entries[day] = (time.monotonic() + ttl, pairs)
            return True

    def invalidate(self, day: str) -> bool:
        with self._lock:
            self._generations[day] = self._generations.get(day, 0) + 1
            dropped = self._entries.pop(day, None) is not None
            if dropped:
                self._invalidations += 1
            return dropped

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                'hits': self._hits,
                'misses': self._misses,
                'invalidations': self._invalidations,
                'days_cached': len(self._entries),
                'hit_rate_percent': round(100 * self._hits / lookups, 2) if lookups else 0,
            }


_cache = PuzzleCache()


def get_cache() -> PuzzleCache:
    return _cache


def puzzle_generation(day: str) -> int:
    return _cache.generation(day)


def cache_daily_puzzle(day: str, pairs: list, ttl_minutes: int = 10,
                       generation: Optional[int] = None) -> bool:
    return _cache.put(day, pairs, ttl_minutes * 60, generation=generation)


def get_cached_daily_puzzle(day: str) -> Optional[list]:
    return _cache.get(day)


def invalidate_daily_puzzle(day: str) -> None:
    _cache.invalidate(day)
