"""SQLite-backed persistent index of cache entries."""
from __future__ import annotations
import logging
import os
import sqlite3
from pathlib import Path
from typing import Iterable

from .errors import CorruptIndex
from .models import CacheEntry, utcnow

logger = logging.getLogger("learncache.index")

CURRENT_SCHEMA_VERSION = 1

# Column definitions added to tables written by older or foreign writers.
_COLUMNS: dict[str, str] = {
    "display_name": "TEXT NOT NULL DEFAULT ''",
    "byte_size": "INTEGER NOT NULL DEFAULT 0",
    "mime_type": "TEXT NOT NULL DEFAULT ''",
    "local_address": "TEXT",
    "remote_address": "TEXT",
    "created_at": "TEXT",
    "last_accessed_at": "TEXT",
    "access_count": "INTEGER NOT NULL DEFAULT 0",
}


class CacheIndex:
    """Durable ``id -> CacheEntry`` mapping.

    Callers read the whole set with :meth:`load`, mutate it in memory and write
    it back with :meth:`save_all`. A corrupt database file never propagates to
    the caller: it is moved aside and replaced by an empty index.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._init_db()
        except sqlite3.DatabaseError as e:
            self._recover(CorruptIndex(db_path, str(e)))

    @property
    def path(self) -> str:
        return self._db_path

    def _init_db(self):
        conn = sqlite3.connect(self._db_path)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER NOT NULL
                )
            """)

            row = conn.execute("SELECT version FROM schema_version").fetchone()
            current_version = row[0] if row else 0

            table_exists = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='cache_entries'"
            ).fetchone()
            if table_exists:
                self._add_missing_columns(conn)
            else:
                self._create_tables(conn)

            if current_version == 0:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)",
                             (CURRENT_SCHEMA_VERSION,))
            elif current_version < CURRENT_SCHEMA_VERSION:
                conn.execute("UPDATE schema_version SET version = ?",
                             (CURRENT_SCHEMA_VERSION,))
            conn.commit()
        finally:
            conn.close()

    def _create_tables(self, conn: sqlite3.Connection):
        conn.execute("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                id TEXT PRIMARY KEY,
                display_name TEXT NOT NULL DEFAULT '',
                byte_size INTEGER NOT NULL DEFAULT 0,
                mime_type TEXT NOT NULL DEFAULT '',
                local_address TEXT,
                remote_address TEXT,
                created_at TEXT,
                last_accessed_at TEXT,
                access_count INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_last_accessed ON cache_entries(last_accessed_at)")

    def _add_missing_columns(self, conn: sqlite3.Connection):
        columns = {row[1] for row in conn.execute("PRAGMA table_info(cache_entries)").fetchall()}
        for name, ddl in _COLUMNS.items():
            if name not in columns:
                logger.info("index.migrate add_column=%s path=%s", name, self._db_path)
                conn.execute(f"ALTER TABLE cache_entries ADD COLUMN {name} {ddl}")

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _recover(self, error: CorruptIndex):
        logger.warning(
            "index.corrupt path=%s reason=%s; resetting to an empty index, previous entries are lost",
            error.path, error.reason,
        )
        corrupt_path = f"{self._db_path}.corrupt"
        try:
            os.replace(self._db_path, corrupt_path)
        except FileNotFoundError:
            pass
        for suffix in ("-wal", "-shm"):
            try:
                os.remove(self._db_path + suffix)
            except FileNotFoundError:
                pass
        self._init_db()

    def _read_rows(self) -> list[dict]:
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT * FROM cache_entries").fetchall()
            return [dict(r) for r in rows]
        except sqlite3.DatabaseError as e:
            raise CorruptIndex(self._db_path, str(e)) from e
        finally:
            conn.close()

    def load(self) -> list[CacheEntry]:
        if not Path(self._db_path).exists():
            self._init_db()
            return []
        try:
            rows = self._read_rows()
        except CorruptIndex as e:
            self._recover(e)
            return []

        loaded_at = utcnow()
        entries: list[CacheEntry] = []
        for row in rows:
            try:
                entry = CacheEntry.from_record(row, default_ts=loaded_at)
            except (ValueError, TypeError) as e:
                logger.warning("index.skip_row id=%s reason=%s", row.get("id"), e)
                continue
            if not entry.has_local and not entry.has_remote:
                logger.warning("index.drop_addressless id=%s", entry.id)
                continue
            entries.append(entry)
        return entries

    def save_all(self, entries: Iterable[CacheEntry]):
        records = [e.to_record() for e in entries]
        placeholders = ", ".join("?" for _ in CacheEntry.FIELDS)
        sql = (f"INSERT INTO cache_entries ({', '.join(CacheEntry.FIELDS)}) "
               f"VALUES ({placeholders})")
        conn = self._get_conn()
        try:
            with conn:
                conn.execute("DELETE FROM cache_entries")
                conn.executemany(sql, [tuple(r[f] for f in CacheEntry.FIELDS) for r in records])
        finally:
            conn.close()

    def get_schema_version(self) -> int:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT version FROM schema_version").fetchone()
        finally:
            conn.close()
        return row["version"] if row else 0
