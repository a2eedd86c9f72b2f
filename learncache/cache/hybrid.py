"""HybridFileStorage — single entry point combining the local cache and remote replication."""
from __future__ import annotations
import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, TYPE_CHECKING, Union

from .errors import AddressUnavailable, ReplicationFailed
from .evictor import RetentionSweeper
from .index import CacheIndex
from .models import CacheEntry, IntegrityReport, StorageStats, SweepResult, SyncResult, UploadedFile
from .store import LocalFileCache
from ..remote.objectstore import RemoteObjectStore, build_object_store
from ..remote.replicator import Replicator

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger("learncache.hybrid")


class HybridFileStorage:
    """Uploads land in the local cache and are replicated in the background.

    Reads prefer the local copy and fall back to the remote URL once the local
    copy has been evicted. ``sync_all_to_remote`` is the retry point for
    uploads whose background replication failed.
    """

    def __init__(self, store: LocalFileCache, replicator: Optional[Replicator] = None,
                 *, sweeper: Optional[RetentionSweeper] = None,
                 max_concurrency: int = 4):
        self._store = store
        self._replicator = replicator
        self._sweeper = sweeper or RetentionSweeper(store, now_fn=store.now)
        self._max_concurrency = max(1, max_concurrency)
        self._in_flight: dict[str, asyncio.Task[bool]] = {}

    @classmethod
    def from_settings(cls, settings: Settings,
                      object_store: Optional[RemoteObjectStore] = None,
                      now_fn: Callable[[], datetime] | None = None) -> "HybridFileStorage":
        index = CacheIndex(settings.cache.index_path)
        store = LocalFileCache(
            settings.cache.local_dir,
            index,
            max_bytes=settings.cache.max_local_bytes,
            now_fn=now_fn,
        )
        rep = settings.replication
        replicator = None
        if rep.enabled:
            replicator = Replicator(
                object_store or build_object_store(rep),
                key_prefix=rep.key_prefix,
                timeout_seconds=rep.timeout_seconds,
                failure_threshold=rep.failure_threshold,
                failure_window_seconds=rep.failure_window_seconds,
                cooldown_seconds=rep.cooldown_seconds,
            )
        sweeper = RetentionSweeper(store, settings.retention.max_age_days, now_fn=store.now)
        return cls(store, replicator, sweeper=sweeper, max_concurrency=rep.max_concurrency)

    @property
    def store(self) -> LocalFileCache:
        return self._store

    @property
    def replicator(self) -> Optional[Replicator]:
        return self._replicator

    @property
    def pending_replications(self) -> int:
        return sum(1 for t in self._in_flight.values() if not t.done())

    async def upload(self, file: UploadedFile) -> CacheEntry:
        if file.size is not None and file.size != len(file.data):
            logger.warning("hybrid.size_mismatch name=%s declared=%d actual=%d",
                           file.name, file.size, len(file.data))
        entry = self._store.put(file.data, file.name, file.mime_type)
        self._schedule_replication(entry.id)
        return entry

    def _schedule_replication(self, entry_id: str,
                              explicit: bool = False) -> Optional[asyncio.Task[bool]]:
        if self._replicator is None:
            return None
        task = self._in_flight.get(entry_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._replicate(entry_id, explicit), name=f"replicate-{entry_id}")
        self._in_flight[entry_id] = task
        task.add_done_callback(lambda t, eid=entry_id: self._forget_task(eid, t))
        return task

    def _forget_task(self, entry_id: str, task: asyncio.Task[bool]):
        if self._in_flight.get(entry_id) is task:
            del self._in_flight[entry_id]

    async def _replicate(self, entry_id: str, explicit: bool = False) -> bool:
        if self._replicator is None:
            return False
        entry = self._store.get(entry_id)
        if entry is None:
            logger.info("hybrid.replicate_skip id=%s reason=deleted", entry_id)
            return False
        if entry.has_remote:
            return True
        if not entry.has_local:
            logger.warning("hybrid.replicate_skip id=%s reason=no-local-copy", entry_id)
            return False

        try:
            data = self._store.load_bytes(entry)
        except OSError as e:
            logger.error("hybrid.replicate_read_failed id=%s error=%s", entry_id, e)
            return False

        try:
            url = await self._replicator.push(entry, data, bypass_circuit=explicit)
        except ReplicationFailed as e:
            logger.warning("hybrid.replication_failed id=%s reason=%s; left local-only until next sync",
                           entry_id, e.reason)
            return False

        # Re-read: the entry may have been deleted or replicated while the push ran.
        current = self._store.get(entry_id)
        if current is None:
            logger.warning("hybrid.replication_discarded id=%s reason=deleted url=%s", entry_id, url)
            return False
        if not current.has_remote:
            self._store.set_remote_address(entry_id, url)
        return True

    def _entry_id(self, entry_or_id: Union[CacheEntry, str]) -> str:
        return entry_or_id.id if isinstance(entry_or_id, CacheEntry) else entry_or_id

    def get(self, entry_id: str) -> CacheEntry:
        return self._store.require(entry_id)

    def list_entries(self) -> list[CacheEntry]:
        return sorted(self._store.entries(), key=lambda e: e.last_accessed_at, reverse=True)

    def resolve_address(self, entry_or_id: Union[CacheEntry, str]) -> str:
        entry_id = self._entry_id(entry_or_id)
        entry = self._store.require(entry_id)
        address = entry.local_address or entry.remote_address
        if address is None:
            logger.error("hybrid.address_unavailable id=%s name=%s", entry_id, entry.display_name)
            raise AddressUnavailable(entry_id)
        self._store.record_access(entry_id)
        return address

    def read_local(self, entry_id: str) -> bytes:
        return self._store.read(entry_id)

    def delete(self, entry_id: str) -> CacheEntry:
        entry = self._store.remove(entry_id)
        logger.info("hybrid.delete id=%s name=%s remote_kept=%s",
                    entry_id, entry.display_name, entry.has_remote)
        entry.remote_address = None
        return entry

    def get_stats(self) -> StorageStats:
        try:
            stats = StorageStats(capacity_bytes=self._store.capacity_bytes)
            for e in self._store.entries():
                stats.total_count += 1
                stats.total_bytes += e.byte_size
                if e.has_local:
                    stats.local_count += 1
                    stats.local_bytes += e.byte_size
                if e.has_remote:
                    stats.remote_count += 1
                    stats.remote_bytes += e.byte_size
            return stats
        except Exception as e:
            logger.error("Stats aggregation failed: %s", e)
            return StorageStats()

    async def sync_all_to_remote(self) -> SyncResult:
        pending = [e.id for e in self._store.entries() if e.has_local and not e.has_remote]
        if not pending:
            return SyncResult()
        if self._replicator is None:
            logger.warning("Sync requested but replication is disabled; %d entries stay local-only",
                           len(pending))
            return SyncResult(failed=len(pending))

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _sync_one(entry_id: str) -> bool:
            async with semaphore:
                joined = self._in_flight.get(entry_id)
                if joined is not None and not joined.done() and await joined:
                    return True
                # Operator retries are attempted even while the circuit is open.
                task = self._schedule_replication(entry_id, explicit=True)
                return bool(task is not None and await task)

        results = await asyncio.gather(*(_sync_one(eid) for eid in pending),
                                       return_exceptions=True)
        result = SyncResult()
        for entry_id, outcome in zip(pending, results):
            if outcome is True:
                result.succeeded += 1
            else:
                if isinstance(outcome, BaseException):
                    logger.error("hybrid.sync_error id=%s error=%s", entry_id, outcome)
                result.failed += 1
        logger.info("Sync to remote: %d succeeded, %d failed", result.succeeded, result.failed)
        return result

    def sweep(self, max_age_days: float | None = None) -> SweepResult:
        return self._sweeper.sweep(max_age_days)

    def check_integrity(self) -> IntegrityReport:
        report = IntegrityReport()

        # Phase 1: entries whose local file vanished
        for entry in self._store.entries():
            if entry.local_address and not Path(entry.local_address).exists():
                report.missing_local.append(entry.id)
                if self._store.mark_local_missing(entry.id):
                    report.dropped_entries.append(entry.id)
        if report.missing_local:
            self._store.save()

        # Phase 2: files nobody references
        referenced = {
            str(Path(e.local_address).resolve())
            for e in self._store.entries() if e.local_address
        }
        for f in self._store.stored_files():
            if str(f.resolve()) not in referenced:
                try:
                    f.unlink()
                    report.orphan_files_removed += 1
                except OSError as e:
                    logger.warning("Could not remove orphan file %s: %s", f, e)

        logger.info(
            "Integrity: %d missing local copies, %d entries dropped, %d orphan files removed",
            len(report.missing_local),
            len(report.dropped_entries),
            report.orphan_files_removed,
        )
        return report

    async def wait_for_replication(self):
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def close(self, timeout: float | None = None):
        pending = [t for t in self._in_flight.values() if not t.done()]
        if pending:
            grace = timeout
            if grace is None and self._replicator is not None:
                grace = self._replicator.timeout_seconds
            _, not_done = await asyncio.wait(pending, timeout=grace)
            for task in not_done:
                task.cancel()
            if not_done:
                logger.warning("Cancelled %d unfinished replications on shutdown", len(not_done))
                await asyncio.gather(*not_done, return_exceptions=True)
        self._store.save()
