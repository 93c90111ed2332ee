from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from starlette.requests import Request

from edgeproxy.edge.objects import CachedObject, LocalObjectBackend, ObjectStore
from edgeproxy.edge.origin import OriginFetcher
from edgeproxy.edge.paths import PathClassifier
from edgeproxy.edge.pipeline import EdgeContext
from edgeproxy.edge.redirects import RedirectStore

ORIGIN_URL = "http://origin.internal:8080"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` covering GET/SET/PING."""

    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}
        self.get_calls: list[str] = []
        self.set_calls: list[str] = []
        self.fail = False
        self.closed = False

    async def get(self, key: str) -> Optional[bytes]:
        self.get_calls.append(key)
        if self.fail:
            raise RedisConnectionError("redis down")
        return self.data.get(key)

    async def set(self, key: str, value: str | bytes) -> bool:
        self.set_calls.append(key)
        if self.fail:
            raise RedisConnectionError("redis down")
        self.data[key] = value.encode("utf-8") if isinstance(value, str) else value
        return True

    async def ping(self) -> bool:
        if self.fail:
            raise RedisConnectionError("redis down")
        return True

    async def aclose(self) -> None:
        self.closed = True


class RecordingBackend(LocalObjectBackend):
    """Local backend that remembers which keys were read and written."""

    def __init__(self, storage_path: Path) -> None:
        super().__init__(storage_path)
        self.reads: list[str] = []
        self.writes: list[str] = []
        self.fail_reads = False
        self.fail_writes = False

    async def read(self, cache_key: str) -> CachedObject:
        self.reads.append(cache_key)
        if self.fail_reads:
            raise OSError("disk unavailable")
        return await super().read(cache_key)

    async def write(self, cache_key: str, body: bytes, content_type: Optional[str]) -> None:
        self.writes.append(cache_key)
        if self.fail_writes:
            raise OSError("disk full")
        await super().write(cache_key, body, content_type)


class OriginStub:
    """Routes origin requests by path to canned handlers and records every call."""

    def __init__(self) -> None:
        self.routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def route(self, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[path] = handler

    def respond(self, path: str, status_code: int = 200, **kwargs) -> None:
        self.routes[path] = lambda _request: httpx.Response(status_code, **kwargs)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, text="origin: no route")
        return handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def calls_to(self, path: str) -> int:
        return sum(1 for request in self.requests if request.url.path == path)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def object_backend(tmp_path: Path) -> RecordingBackend:
    return RecordingBackend(tmp_path / "objects")


@pytest.fixture
def origin() -> OriginStub:
    return OriginStub()


@pytest.fixture
def make_context(fake_redis: FakeRedis, object_backend: RecordingBackend, origin: OriginStub):
    def _make(**overrides) -> EdgeContext:
        follow_redirects = overrides.pop("follow_redirects", False)
        fetcher = OriginFetcher(
            httpx.AsyncClient(transport=origin.transport),
            ORIGIN_URL,
            follow_redirects=follow_redirects,
        )
        options = {
            "classifier": PathClassifier(),
            "redirects": RedirectStore(fake_redis),
            "objects": ObjectStore(object_backend),
            "origin": fetcher,
        }
        options.update(overrides)
        return EdgeContext(**options)

    return _make


@pytest.fixture
def make_request():
    def _make(
        path: str,
        *,
        method: str = "GET",
        host: str = "blog.example.com",
        query: str = "",
        body: bytes = b"",
        headers: Optional[dict[str, str | bytes]] = None,
    ) -> Request:
        raw_headers = [(b"host", host.encode("latin-1"))]
        for name, value in (headers or {}).items():
            encoded = value if isinstance(value, bytes) else value.encode("latin-1")
            raw_headers.append((name.lower().encode("latin-1"), encoded))
        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "scheme": "https",
            "path": path,
            "raw_path": path.encode("utf-8"),
            "root_path": "",
            "query_string": query.encode("utf-8"),
            "headers": raw_headers,
            "client": ("203.0.113.7", 51234),
            "server": (host, 443),
        }
        sent = False

        async def receive():
            nonlocal sent
            if sent:
                return {"type": "http.disconnect"}
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}

        return Request(scope, receive)

    return _make


async def read_body(response) -> bytes:
    if hasattr(response, "body_iterator"):
        data = bytearray()
        async for chunk in response.body_iterator:
            data.extend(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8"))
        return bytes(data)
    return bytes(response.body)


@pytest.fixture
def body_of():
    return read_body
