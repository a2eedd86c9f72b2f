"""Cache entry record and operation results."""
from __future__ import annotations
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Optional

LOCAL_ONLY = "local_only"
LOCAL_AND_REMOTE = "local_and_remote"
REMOTE_ONLY = "remote_only"
GONE = "gone"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_entry_id() -> str:
    return uuid.uuid4().hex


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class UploadedFile:
    """A file handed to the cache by the ingestion layer."""
    name: str
    mime_type: str
    data: bytes
    size: Optional[int] = None

    def __post_init__(self):
        if self.size is None:
            self.size = len(self.data)


@dataclass
class CacheEntry:
    id: str
    display_name: str
    byte_size: int
    mime_type: str
    created_at: datetime
    last_accessed_at: datetime
    local_address: Optional[str] = None
    remote_address: Optional[str] = None
    access_count: int = 0

    # Column order used by the index table.
    FIELDS = (
        "id", "display_name", "byte_size", "mime_type", "local_address",
        "remote_address", "created_at", "last_accessed_at", "access_count",
    )

    @property
    def has_local(self) -> bool:
        return self.local_address is not None

    @property
    def has_remote(self) -> bool:
        return self.remote_address is not None

    @property
    def state(self) -> str:
        if self.has_local and self.has_remote:
            return LOCAL_AND_REMOTE
        if self.has_local:
            return LOCAL_ONLY
        if self.has_remote:
            return REMOTE_ONLY
        return GONE

    @property
    def extension(self) -> str:
        suffix = PurePosixPath(self.display_name.replace("\\", "/")).suffix.lower()
        if not suffix or len(suffix) > 16 or not suffix[1:].isalnum():
            return ""
        return suffix

    def touch(self, now: datetime) -> None:
        self.last_accessed_at = max(now, self.created_at)
        self.access_count += 1

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "byte_size": self.byte_size,
            "mime_type": self.mime_type,
            "local_address": self.local_address,
            "remote_address": self.remote_address,
            "created_at": self.created_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
            "access_count": self.access_count,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any], default_ts: datetime | None = None) -> "CacheEntry":
        """Build an entry from a stored row. Unknown keys are ignored, missing ones default."""
        entry_id = record.get("id")
        if not entry_id:
            raise ValueError("record has no id")
        fallback = default_ts or utcnow()
        created = _parse_ts(record.get("created_at")) or fallback
        accessed = _parse_ts(record.get("last_accessed_at")) or created
        return cls(
            id=str(entry_id),
            display_name=record.get("display_name") or "",
            byte_size=int(record.get("byte_size") or 0),
            mime_type=record.get("mime_type") or "",
            local_address=record.get("local_address") or None,
            remote_address=record.get("remote_address") or None,
            created_at=created,
            last_accessed_at=max(accessed, created),
            access_count=int(record.get("access_count") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        data = self.to_record()
        data["state"] = self.state
        return data


@dataclass
class StorageStats:
    local_count: int = 0
    remote_count: int = 0
    local_bytes: int = 0
    remote_bytes: int = 0
    total_count: int = 0
    total_bytes: int = 0
    capacity_bytes: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class SyncResult:
    succeeded: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class SweepResult:
    evicted_count: int = 0
    freed_bytes: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class IntegrityReport:
    missing_local: list[str] = field(default_factory=list)
    dropped_entries: list[str] = field(default_factory=list)
    orphan_files_removed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
