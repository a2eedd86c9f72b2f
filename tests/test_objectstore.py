import json
from pathlib import Path

import httpx
import pytest

from learncache.config import ReplicationConfig
from learncache.remote.objectstore import DirectoryObjectStore, HttpObjectStore, build_object_store


def _recording_transport(responder):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return responder(request)

    return httpx.MockTransport(handler), requests


@pytest.mark.anyio
async def test_http_store_puts_object_and_reads_url_from_body():
    transport, requests = _recording_transport(
        lambda req: httpx.Response(200, json={"url": "https://cdn.example/learning-files/a1.pdf"})
    )
    store = HttpObjectStore("https://store.example/bucket/", api_key="secret", transport=transport)

    url = await store.put_object("learning-files/a1.pdf", b"%PDF-1.7", "application/pdf")

    assert url == "https://cdn.example/learning-files/a1.pdf"
    assert len(requests) == 1
    req = requests[0]
    assert req.method == "PUT"
    assert str(req.url) == "https://store.example/bucket/learning-files/a1.pdf"
    assert req.headers["authorization"] == "Bearer secret"
    assert req.headers["content-type"] == "application/pdf"
    assert req.content == b"%PDF-1.7"


@pytest.mark.anyio
async def test_http_store_builds_public_url_without_body():
    transport, requests = _recording_transport(lambda req: httpx.Response(201))
    store = HttpObjectStore(
        "https://store.example/bucket",
        public_base_url="https://cdn.example/",
        transport=transport,
    )

    url = await store.put_object("learning-files/a 1.pdf", b"x", "application/pdf")

    assert url == "https://cdn.example/learning-files/a%201.pdf"
    assert "authorization" not in requests[0].headers


@pytest.mark.anyio
async def test_http_store_raises_on_server_error():
    transport, _ = _recording_transport(lambda req: httpx.Response(500, text="boom"))
    store = HttpObjectStore("https://store.example/bucket", transport=transport)

    with pytest.raises(httpx.HTTPStatusError) as exc_info:
        await store.put_object("k.pdf", b"x", "application/pdf")
    assert exc_info.value.response.status_code == 500


@pytest.mark.anyio
async def test_http_store_accepts_upload_service_response_shape():
    body = json.dumps({"success": True, "fileUrl": "https://files.example/k.pdf"})
    transport, _ = _recording_transport(
        lambda req: httpx.Response(200, content=body, headers={"content-type": "application/json"})
    )
    store = HttpObjectStore("https://store.example", transport=transport)

    assert await store.put_object("k.pdf", b"x", "application/pdf") == "https://files.example/k.pdf"


@pytest.mark.anyio
async def test_directory_store_writes_object(tmp_path):
    store = DirectoryObjectStore(str(tmp_path / "remote"))

    url = await store.put_object("learning-files/a1.pdf", b"content", "application/pdf")

    target = tmp_path / "remote" / "learning-files" / "a1.pdf"
    assert target.read_bytes() == b"content"
    assert url == target.resolve().as_uri()


@pytest.mark.anyio
async def test_directory_store_overwrites_same_key(tmp_path):
    store = DirectoryObjectStore(str(tmp_path), public_base_url="https://files.example/static")

    first = await store.put_object("k.txt", b"one", "text/plain")
    second = await store.put_object("k.txt", b"two", "text/plain")

    assert first == second == "https://files.example/static/k.txt"
    assert (tmp_path / "k.txt").read_bytes() == b"two"
    assert [p.name for p in Path(tmp_path).iterdir()] == ["k.txt"]


@pytest.mark.anyio
async def test_directory_store_rejects_escaping_keys(tmp_path):
    store = DirectoryObjectStore(str(tmp_path / "remote"))
    with pytest.raises(ValueError):
        await store.put_object("../outside.txt", b"x", "text/plain")


def test_build_object_store_selects_backend(tmp_path):
    directory = build_object_store(ReplicationConfig(backend="directory", remote_dir=str(tmp_path)))
    http = build_object_store(ReplicationConfig(backend="HTTP", base_url="https://store.example"))

    assert isinstance(directory, DirectoryObjectStore)
    assert isinstance(http, HttpObjectStore)


@pytest.mark.anyio
async def test_directory_store_maps_file_address_back_to_key(tmp_path):
    store = DirectoryObjectStore(str(tmp_path / "remote"))
    url = await store.put_object("learning-files/a 1.pdf", b"x", "application/pdf")

    assert store.key_for_address(url) == "learning-files/a 1.pdf"
    assert store.key_for_address((tmp_path / "elsewhere.pdf").resolve().as_uri()) is None
    assert store.key_for_address("https://cdn.example/learning-files/a1.pdf") is None
