"""Exceptions raised by the hybrid file cache."""
from __future__ import annotations


class HybridCacheError(Exception):
    """Base exception for cache operations."""


class CapacityExceeded(HybridCacheError):
    """Local cache cannot admit a file without evicting unreplicated data."""

    def __init__(self, requested_bytes: int, available_bytes: int, capacity_bytes: int):
        super().__init__(
            f"Local cache is full: need {requested_bytes} bytes but only "
            f"{available_bytes} of {capacity_bytes} can be made available. "
            "Files still waiting for cloud backup cannot be removed; "
            "retry after they have synced or delete unused files."
        )
        self.requested_bytes = requested_bytes
        self.available_bytes = available_bytes
        self.capacity_bytes = capacity_bytes


class ReplicationFailed(HybridCacheError):
    """Pushing an entry to the remote store failed. Never fatal."""

    def __init__(self, entry_id: str, reason: str):
        super().__init__(f"Replication of {entry_id} failed: {reason}")
        self.entry_id = entry_id
        self.reason = reason


class EntryNotFound(HybridCacheError):
    def __init__(self, entry_id: str):
        super().__init__(f"Cache entry {entry_id} not found")
        self.entry_id = entry_id


class AddressUnavailable(HybridCacheError):
    """Entry has neither a local nor a remote copy."""

    def __init__(self, entry_id: str):
        super().__init__(f"Cache entry {entry_id} has no local or remote address")
        self.entry_id = entry_id


class EvictionRefused(HybridCacheError):
    """Local copy of an entry without a remote copy cannot be evicted."""

    def __init__(self, entry_id: str):
        super().__init__(f"Refusing to evict {entry_id}: no remote copy")
        self.entry_id = entry_id


class CorruptIndex(HybridCacheError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Cache index {path} is unreadable: {reason}")
        self.path = path
        self.reason = reason
