"""Cache eviction (LRU admission, time-based retention) — protects unreplicated files."""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .store import LocalFileCache

from .models import CacheEntry, SweepResult, utcnow

logger = logging.getLogger("learncache.evictor")


def lru_key(entry: CacheEntry) -> tuple[datetime, datetime, str]:
    """Sort key putting the least recently used entry first."""
    return (entry.last_accessed_at, entry.created_at, entry.id)


def is_evictable(entry: CacheEntry) -> bool:
    """Only a local copy that also exists remotely may be dropped."""
    return entry.has_local and entry.has_remote


def evictable_bytes(entries: Iterable[CacheEntry]) -> int:
    return sum(e.byte_size for e in entries if is_evictable(e))


def select_admission_victims(entries: Iterable[CacheEntry],
                             bytes_needed: int) -> Optional[list[CacheEntry]]:
    """Pick LRU victims freeing at least ``bytes_needed`` bytes.

    Returns ``None`` when every evictable entry together still frees too
    little, so the caller can refuse the write without evicting anything.
    """
    if bytes_needed <= 0:
        return []
    victims: list[CacheEntry] = []
    freed = 0
    for entry in sorted((e for e in entries if is_evictable(e)), key=lru_key):
        victims.append(entry)
        freed += entry.byte_size
        if freed >= bytes_needed:
            return victims
    return None


def select_stale_victims(entries: Iterable[CacheEntry], max_age: timedelta,
                         now: datetime) -> list[CacheEntry]:
    return sorted(
        (e for e in entries if is_evictable(e) and now - e.last_accessed_at > max_age),
        key=lru_key,
    )


class RetentionSweeper:
    def __init__(self, store: LocalFileCache, max_age_days: float = 7,
                 now_fn: Callable[[], datetime] | None = None):
        self._store = store
        self._max_age_days = max_age_days
        self._now_fn = now_fn or utcnow

    @property
    def max_age_days(self) -> float:
        return self._max_age_days

    def sweep(self, max_age_days: float | None = None) -> SweepResult:
        days = self._max_age_days if max_age_days is None else max_age_days
        result = SweepResult()
        try:
            victims = select_stale_victims(
                self._store.entries(), timedelta(days=days), self._now_fn()
            )
            if victims:
                result.freed_bytes = self._store.evict_entries(victims)
                result.evicted_count = len(victims)
        except Exception as e:
            logger.error("Retention sweep failed: %s", e)
            return result
        if result.evicted_count:
            logger.info("Swept %d stale local copies (%d bytes, max_age_days=%s)",
                        result.evicted_count, result.freed_bytes, days)
        return result
