"""Durable remote object stores the replicator pushes to."""
from __future__ import annotations
import asyncio
import logging
import os
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol, TYPE_CHECKING
from urllib.parse import quote, urlparse
from urllib.request import url2pathname

import httpx

if TYPE_CHECKING:
    from ..config import ReplicationConfig

logger = logging.getLogger("learncache.remote")


class RemoteObjectStore(Protocol):
    async def put_object(self, key: str, data: bytes, content_type: str) -> str: ...


def _join_url(base: str, key: str) -> str:
    return f"{base.rstrip('/')}/{quote(key)}"


class HttpObjectStore:
    """Stores objects with ``PUT {base_url}/{key}``.

    Re-putting the same key overwrites the object, so retries are safe.
    """

    def __init__(self, base_url: str, api_key: str = "", public_base_url: str = "",
                 timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._public_base_url = (public_base_url or base_url).rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def put_object(self, key: str, data: bytes, content_type: str) -> str:
        headers = {"Content-Type": content_type}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.put(_join_url(self._base_url, key), content=data, headers=headers)
            resp.raise_for_status()
            url = self._url_from_response(resp)
        return url or _join_url(self._public_base_url, key)

    @staticmethod
    def _url_from_response(resp: httpx.Response) -> Optional[str]:
        if "application/json" not in resp.headers.get("content-type", ""):
            return None
        try:
            body = resp.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            url = body.get("url") or body.get("fileUrl")
            if isinstance(url, str) and url:
                return url
        return None


class DirectoryObjectStore:
    """Filesystem-backed store for single-host deployments.

    Layout: ``<root>/<key>``
    """

    def __init__(self, root: str, public_base_url: str = ""):
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._public_base_url = public_base_url.rstrip("/")

    def path_for(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or any(p in ("..", "") for p in parts) or PurePosixPath(key).is_absolute():
            raise ValueError(f"Invalid object key '{key}'")
        return self._root.joinpath(*parts)

    def key_for_address(self, address: str) -> Optional[str]:
        """Object key of a ``file://`` address inside this store, else None."""
        parsed = urlparse(address)
        if parsed.scheme != "file":
            return None
        path = Path(url2pathname(parsed.path)).resolve()
        try:
            return path.relative_to(self._root).as_posix()
        except ValueError:
            return None

    def _write(self, path: Path, data: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)

    async def put_object(self, key: str, data: bytes, content_type: str) -> str:
        path = self.path_for(key)
        await asyncio.to_thread(self._write, path, data)
        if self._public_base_url:
            return _join_url(self._public_base_url, key)
        return path.as_uri()


def build_object_store(config: ReplicationConfig) -> RemoteObjectStore:
    if config.backend == "http":
        logger.info("Remote store: http base_url=%s", config.base_url)
        return HttpObjectStore(
            base_url=config.base_url,
            api_key=config.api_key,
            public_base_url=config.public_base_url,
            timeout=config.timeout_seconds,
        )
    logger.info("Remote store: directory root=%s", config.remote_dir)
    return DirectoryObjectStore(config.remote_dir, public_base_url=config.public_base_url)
