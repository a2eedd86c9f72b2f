import pytest
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from learncache.cache.index import CacheIndex, CURRENT_SCHEMA_VERSION
from learncache.cache.models import CacheEntry

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _entry(eid: str, **overrides) -> CacheEntry:
    fields = dict(
        id=eid, display_name=f"{eid}.pdf", byte_size=10, mime_type="application/pdf",
        created_at=T0, last_accessed_at=T0, local_address=f"/tmp/{eid}.pdf",
    )
    fields.update(overrides)
    return CacheEntry(**fields)


@pytest.fixture
def index(tmp_path):
    return CacheIndex(str(tmp_path / "index.db"))


def test_save_and_load(index):
    entry = _entry(
        "a1", remote_address="https://cdn.example/a1.pdf", access_count=4,
        last_accessed_at=T0 + timedelta(days=2),
    )
    index.save_all([entry])

    loaded = index.load()
    assert loaded == [entry]


def test_load_survives_reopen(tmp_path):
    path = str(tmp_path / "index.db")
    CacheIndex(path).save_all([_entry("a1"), _entry("b2")])

    reopened = CacheIndex(path)
    assert sorted(e.id for e in reopened.load()) == ["a1", "b2"]


def test_save_all_replaces_previous_set(index):
    index.save_all([_entry("a1"), _entry("b2")])
    index.save_all([_entry("c3")])
    assert [e.id for e in index.load()] == ["c3"]


def test_empty_index_loads_empty(index):
    assert index.load() == []


def test_missing_file_loads_empty(index):
    Path(index.path).unlink()
    assert index.load() == []
    assert Path(index.path).exists()


def test_corrupt_file_resets_on_open(tmp_path, caplog):
    path = tmp_path / "index.db"
    path.write_bytes(b"this is not a sqlite database at all" * 50)

    caplog.set_level("WARNING", logger="learncache.index")
    index = CacheIndex(str(path))

    assert index.load() == []
    assert (tmp_path / "index.db.corrupt").exists()
    assert "index.corrupt" in caplog.text


def test_corrupt_file_after_open_resets_on_load(index, caplog):
    index.save_all([_entry("a1")])
    Path(index.path).write_bytes(b"garbage" * 200)

    caplog.set_level("WARNING", logger="learncache.index")
    assert index.load() == []
    assert "index.corrupt" in caplog.text

    index.save_all([_entry("b2")])
    assert [e.id for e in index.load()] == ["b2"]


def test_schema_version_tracked(index):
    assert index.get_schema_version() == CURRENT_SCHEMA_VERSION


def test_addressless_rows_are_dropped(index, caplog):
    index.save_all([_entry("a1", local_address=None, remote_address=None), _entry("b2")])

    caplog.set_level("WARNING", logger="learncache.index")
    assert [e.id for e in index.load()] == ["b2"]
    assert "index.drop_addressless id=a1" in caplog.text


def _create_legacy_db(db_path: str):
    conn = sqlite3.connect(db_path)
    conn.execute("""
        CREATE TABLE cache_entries (
            id TEXT PRIMARY KEY,
            display_name TEXT,
            local_address TEXT,
            uploaded_by TEXT
        )
    """)
    conn.execute(
        "INSERT INTO cache_entries (id, display_name, local_address, uploaded_by) VALUES (?, ?, ?, ?)",
        ("old1", "safety.pdf", "/tmp/old1.pdf", "admin"),
    )
    conn.commit()
    conn.close()


def test_legacy_schema_is_readable_with_defaults(tmp_path):
    db_path = str(tmp_path / "legacy.db")
    _create_legacy_db(db_path)

    index = CacheIndex(db_path)
    entries = index.load()

    assert len(entries) == 1
    entry = entries[0]
    assert entry.id == "old1"
    assert entry.display_name == "safety.pdf"
    assert entry.byte_size == 0
    assert entry.access_count == 0
    assert entry.remote_address is None
    assert entry.last_accessed_at >= entry.created_at
    assert index.get_schema_version() == CURRENT_SCHEMA_VERSION


def test_legacy_schema_gains_missing_columns(tmp_path):
    db_path = str(tmp_path / "legacy.db")
    _create_legacy_db(db_path)

    index = CacheIndex(db_path)
    conn = sqlite3.connect(db_path)
    columns = {row[1] for row in conn.execute("PRAGMA table_info(cache_entries)").fetchall()}
    conn.close()
    assert set(CacheEntry.FIELDS) <= columns

    entry = index.load()[0]
    entry.remote_address = "https://cdn.example/old1.pdf"
    index.save_all([entry])
    assert index.load()[0].remote_address == "https://cdn.example/old1.pdf"


def test_undecodable_row_is_skipped(index):
    index.save_all([_entry("a1"), _entry("b2")])
    conn = sqlite3.connect(index.path)
    conn.execute("UPDATE cache_entries SET created_at = 'not-a-date' WHERE id = 'a1'")
    conn.commit()
    conn.close()

    assert [e.id for e in index.load()] == ["b2"]
