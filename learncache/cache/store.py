"""LocalFileCache — size-bounded local copy of uploaded files, bookkept in the index."""
from __future__ import annotations
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional

from .errors import CapacityExceeded, EntryNotFound, EvictionRefused
from .evictor import evictable_bytes, is_evictable, select_admission_victims
from .index import CacheIndex
from .models import CacheEntry, new_entry_id, utcnow

logger = logging.getLogger("learncache.store")

DEFAULT_MAX_BYTES = 100 * 1024 * 1024


class LocalFileCache:
    def __init__(self, local_dir: str, index: CacheIndex,
                 max_bytes: int = DEFAULT_MAX_BYTES,
                 now_fn: Callable[[], datetime] | None = None):
        self._dir = Path(local_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._index = index
        self._max_bytes = max_bytes
        self._now_fn = now_fn or utcnow
        self._entries: dict[str, CacheEntry] = {e.id: e for e in index.load()}

    @property
    def local_dir(self) -> Path:
        return self._dir

    @property
    def index(self) -> CacheIndex:
        return self._index

    @property
    def capacity_bytes(self) -> int:
        return self._max_bytes

    @property
    def local_bytes(self) -> int:
        return sum(e.byte_size for e in self._entries.values() if e.has_local)

    def now(self) -> datetime:
        return self._now_fn()

    def entries(self) -> list[CacheEntry]:
        return list(self._entries.values())

    def get(self, entry_id: str) -> Optional[CacheEntry]:
        return self._entries.get(entry_id)

    def require(self, entry_id: str) -> CacheEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        return entry

    def save(self):
        self._index.save_all(self._entries.values())

    def put(self, data: bytes, name: str, mime_type: str) -> CacheEntry:
        size = len(data)
        self._make_room(size)

        now = self._now_fn()
        entry = CacheEntry(
            id=new_entry_id(),
            display_name=name,
            byte_size=size,
            mime_type=mime_type or "application/octet-stream",
            created_at=now,
            last_accessed_at=now,
        )
        path = self._dir / f"{entry.id}{entry.extension}"
        self._write_atomic(path, data)
        entry.local_address = str(path)
        self._entries[entry.id] = entry
        self.save()
        logger.info("store.put id=%s name=%s size=%d local_bytes=%d",
                    entry.id, name, size, self.local_bytes)
        return entry

    def _make_room(self, size: int):
        current = self.local_bytes
        needed = current + size - self._max_bytes
        if needed <= 0:
            return
        victims = None
        if size <= self._max_bytes:
            victims = select_admission_victims(self._entries.values(), needed)
        if victims is None:
            available = max(self._max_bytes - current + evictable_bytes(self._entries.values()), 0)
            logger.warning("store.capacity_exceeded size=%d available=%d capacity=%d",
                           size, available, self._max_bytes)
            raise CapacityExceeded(size, available, self._max_bytes)
        freed = self.evict_entries(victims)
        logger.info("store.admission_evict count=%d freed=%d", len(victims), freed)

    def _write_atomic(self, path: Path, data: bytes):
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)

    def _unlink(self, address: str):
        try:
            Path(address).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("store.unlink_failed path=%s error=%s", address, e)

    def evict_entries(self, entries: list[CacheEntry]) -> int:
        """Drop the local copy of each entry. All must already be replicated."""
        for entry in entries:
            if entry.has_local and not entry.has_remote:
                raise EvictionRefused(entry.id)
        freed = 0
        for entry in entries:
            if not is_evictable(entry):
                continue
            self._unlink(entry.local_address)  # type: ignore[arg-type]
            entry.local_address = None
            freed += entry.byte_size
        self.save()
        return freed

    def evict_local(self, entry_id: str) -> CacheEntry:
        entry = self.require(entry_id)
        if entry.has_local:
            self.evict_entries([entry])
        return entry

    def load_bytes(self, entry: CacheEntry) -> bytes:
        if entry.local_address is None:
            raise EntryNotFound(entry.id)
        return Path(entry.local_address).read_bytes()

    def read(self, entry_id: str) -> bytes:
        entry = self.require(entry_id)
        try:
            data = self.load_bytes(entry)
        except FileNotFoundError:
            logger.warning("store.local_missing id=%s path=%s", entry_id, entry.local_address)
            self.mark_local_missing(entry_id)
            self.save()
            raise EntryNotFound(entry_id)
        self.record_access(entry_id)
        return data

    def record_access(self, entry_id: str) -> CacheEntry:
        entry = self.require(entry_id)
        entry.touch(self._now_fn())
        self.save()
        return entry

    def set_remote_address(self, entry_id: str, url: str) -> Optional[CacheEntry]:
        entry = self._entries.get(entry_id)
        if entry is None:
            return None
        entry.remote_address = url
        self.save()
        return entry

    def remove(self, entry_id: str) -> CacheEntry:
        entry = self._entries.pop(entry_id, None)
        if entry is None:
            raise EntryNotFound(entry_id)
        if entry.local_address:
            self._unlink(entry.local_address)
        entry.local_address = None
        self.save()
        return entry

    def mark_local_missing(self, entry_id: str) -> bool:
        """Forget a local copy that disappeared. Returns True if the entry was dropped.

        Does not persist; callers save once after a batch.
        """
        entry = self.require(entry_id)
        entry.local_address = None
        if entry.has_remote:
            return False
        del self._entries[entry_id]
        logger.error("store.data_loss id=%s name=%s: local copy missing and never replicated",
                     entry_id, entry.display_name)
        return True

    def stored_files(self) -> Iterator[Path]:
        for f in self._dir.iterdir():
            if f.is_file():
                yield f
