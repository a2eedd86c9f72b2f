"""learncache — FastAPI service for the hybrid learning-material file cache."""
from __future__ import annotations
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import FileResponse, Response, RedirectResponse
from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import unquote
import logging
import asyncio

from .config import Settings
from .cache.errors import AddressUnavailable, CapacityExceeded, EntryNotFound
from .cache.hybrid import HybridFileStorage
from .cache.models import CacheEntry, UploadedFile
from .remote.objectstore import DirectoryObjectStore

logger = logging.getLogger("learncache")


def _setup_logging(log_level: str = "info"):
    """Configure structured logging for learncache."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setLevel(level)
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    handler.setFormatter(formatter)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


_storage: HybridFileStorage | None = None
_settings: Settings | None = None
_sweep_task: asyncio.Task[None] | None = None


def _load_settings() -> Settings:
    for path in ["learncache.yaml", "learncache.example.yaml"]:
        if Path(path).exists():
            return Settings.from_yaml(path)
    return Settings()


async def _periodic_sweep():
    """Background task: run the retention sweep every N hours."""
    if not _storage or not _settings:
        return

    interval_seconds = _settings.retention.sweep_interval_hours * 3600
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = _storage.sweep()
            if result.evicted_count > 0:
                logger.info("Periodic sweep evicted %d local copies", result.evicted_count)
        except Exception as e:
            logger.error("Periodic sweep failed: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _storage, _settings, _sweep_task
    _settings = _load_settings()
    _setup_logging(_settings.server.log_level)
    logger.info("learncache starting on port %s...", _settings.server.port)

    _storage = HybridFileStorage.from_settings(_settings)
    logger.info("Loaded %d cache entries from index", len(_storage.store.entries()))
    _storage.check_integrity()

    if _settings.retention.sweep_interval_hours > 0:
        _sweep_task = asyncio.create_task(_periodic_sweep())
        logger.info("Retention sweep scheduled (interval=%dh, max_age_days=%s)",
                    _settings.retention.sweep_interval_hours, _settings.retention.max_age_days)

    yield

    if _sweep_task:
        _sweep_task.cancel()
        try:
            await _sweep_task
        except asyncio.CancelledError:
            pass
        _sweep_task = None
    await _storage.close()
    logger.info("learncache shutting down...")


app = FastAPI(title="learncache", version="0.1.0", lifespan=lifespan)


def _require_storage() -> HybridFileStorage:
    if not _storage:
        raise HTTPException(status_code=503, detail="Storage not initialized")
    return _storage


def _require_settings() -> Settings:
    if not _settings:
        raise HTTPException(status_code=503, detail="Settings not loaded")
    return _settings


def _directory_store() -> DirectoryObjectStore | None:
    replicator = _storage.replicator if _storage else None
    if replicator is not None and isinstance(replicator.object_store, DirectoryObjectStore):
        return replicator.object_store
    return None


def _remote_url(request: Request, address: str | None) -> str | None:
    """Map ``file://`` addresses of the directory store onto /v1/remote."""
    store = _directory_store()
    if address and store is not None:
        key = store.key_for_address(address)
        if key is not None:
            return str(request.url_for("get_remote_object", key=key))
    return address


def _entry_json(request: Request, entry: CacheEntry) -> dict:
    data = entry.to_dict()
    data["local_address"] = (
        str(request.url_for("get_file_content", entry_id=entry.id)) if entry.has_local else None
    )
    data["remote_address"] = _remote_url(request, entry.remote_address)
    return data


@app.get("/health")
async def health():
    storage = _require_storage()
    replicator = storage.replicator
    if replicator is None:
        replication_status = "disabled"
    else:
        replication_status = "circuit-open" if replicator.circuit_open else "available"
    return {
        "status": "ok",
        "entries": len(storage.store.entries()),
        "pending_replications": storage.pending_replications,
        "replication_status": replication_status,
    }


@app.post("/v1/files", status_code=201)
async def upload_file(request: Request):
    storage = _require_storage()
    upload_cfg = _require_settings().upload

    name = request.query_params.get("name") or unquote(request.headers.get("x-file-name", ""))
    mime_type = request.headers.get("content-type", "application/octet-stream")
    if not name:
        raise HTTPException(status_code=400, detail="File name is required (?name= or X-File-Name)")
    if not upload_cfg.is_allowed(mime_type):
        raise HTTPException(status_code=415, detail=f"Unsupported file type: {mime_type}")

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > upload_cfg.max_upload_bytes:
        raise HTTPException(status_code=413,
                            detail=f"File exceeds the {upload_cfg.max_upload_mb}MB limit")
    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(data) > upload_cfg.max_upload_bytes:
        raise HTTPException(status_code=413,
                            detail=f"File exceeds the {upload_cfg.max_upload_mb}MB limit")

    file = UploadedFile(name=name, mime_type=mime_type.split(";", 1)[0].strip(), data=data)
    try:
        entry = await storage.upload(file)
    except CapacityExceeded as e:
        raise HTTPException(status_code=507, detail=str(e))
    logger.info("Upload accepted | id=%s name=%s size=%d", entry.id, name, entry.byte_size)
    return _entry_json(request, entry)


@app.get("/v1/files")
async def list_files(request: Request):
    storage = _require_storage()
    return {"files": [_entry_json(request, e) for e in storage.list_entries()]}


@app.get("/v1/files/{entry_id}")
async def get_file(entry_id: str, request: Request):
    storage = _require_storage()
    try:
        storage.resolve_address(entry_id)
    except EntryNotFound:
        raise HTTPException(status_code=404, detail=f"File '{entry_id}' not found")
    except AddressUnavailable as e:
        raise HTTPException(status_code=500, detail=str(e))
    data = _entry_json(request, storage.get(entry_id))
    data["address"] = data["local_address"] or data["remote_address"]
    return data


@app.get("/v1/files/{entry_id}/content")
async def get_file_content(entry_id: str, request: Request):
    storage = _require_storage()
    try:
        entry = storage.get(entry_id)
    except EntryNotFound:
        raise HTTPException(status_code=404, detail=f"File '{entry_id}' not found")

    if entry.has_local:
        try:
            data = storage.read_local(entry_id)
            return Response(content=data, media_type=entry.mime_type)
        except EntryNotFound:
            logger.warning("Local copy vanished | id=%s, falling back to remote", entry_id)

    try:
        address = storage.resolve_address(entry_id)
    except EntryNotFound:
        raise HTTPException(status_code=404, detail=f"File '{entry_id}' not found")
    except AddressUnavailable as e:
        raise HTTPException(status_code=500, detail=str(e))
    return RedirectResponse(url=_remote_url(request, address), status_code=307)


@app.get("/v1/remote/{key:path}")
async def get_remote_object(key: str):
    _require_storage()
    store = _directory_store()
    if store is None:
        raise HTTPException(status_code=404, detail="Remote objects are not served by this host")
    try:
        path = store.path_for(key)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Object '{key}' not found")
    if not path.is_file():
        raise HTTPException(status_code=404, detail=f"Object '{key}' not found")
    return FileResponse(path)


@app.delete("/v1/files/{entry_id}")
async def delete_file(entry_id: str):
    storage = _require_storage()
    try:
        entry = storage.delete(entry_id)
    except EntryNotFound:
        raise HTTPException(status_code=404, detail=f"File '{entry_id}' not found")
    return {"deleted": entry.id}


@app.get("/v1/storage/stats")
async def storage_stats():
    storage = _require_storage()
    return storage.get_stats().to_dict()


@app.post("/v1/storage/sync")
async def storage_sync():
    storage = _require_storage()
    result = await storage.sync_all_to_remote()
    return result.to_dict()


@app.post("/v1/storage/sweep")
async def storage_sweep(max_age_days: float | None = None):
    storage = _require_storage()
    if max_age_days is not None and max_age_days < 0:
        raise HTTPException(status_code=400, detail="max_age_days must be >= 0")
    result = storage.sweep(max_age_days)
    return result.to_dict()
