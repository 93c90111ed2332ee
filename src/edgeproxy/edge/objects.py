"""Cached response bodies stored on local disk or S3-compatible storage."""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Callable, Optional
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError
from fastapi import HTTPException, status
import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import EdgeProxySettings

LOGGER = structlog.get_logger("edgeproxy.objects")

DEFAULT_CONTENT_TYPE = "application/octet-stream"
CHUNK_SIZE = 64 * 1024
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

OBJECT_LOOKUP_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edge_object_lookup_errors_total", "Object lookups that failed and degraded to a miss")
)
OBJECT_WRITE_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edge_object_write_errors_total", "Cached bodies that could not be persisted")
)
BYTES_WRITTEN_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edge_object_bytes_written_total", "Bytes written to the object store")
)


@dataclass
class CachedObject:
    content_type: str
    chunks: AsyncIterator[bytes]
    size: Optional[int] = None

    async def read(self) -> bytes:
        data = bytearray()
        async for chunk in self.chunks:
            data.extend(chunk)
        return bytes(data)


def _cache_miss() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cache miss")


class ObjectBackend:
    async def write(self, cache_key: str, body: bytes, content_type: Optional[str]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def read(self, cache_key: str) -> CachedObject:
        raise NotImplementedError

    def status(self) -> dict[str, object]:
        raise NotImplementedError


class CircuitBreaker:
    def __init__(self, failure_threshold: int, reset_timeout: float):
        self._failure_threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._failure_count = 0
        self._opened_at: float | None = None

    def _maybe_reset(self) -> None:
        if self._opened_at is None:
            return
        if time.monotonic() - self._opened_at >= self._reset_timeout:
            self._opened_at = None
            self._failure_count = 0

    def allow_request(self) -> bool:
        self._maybe_reset()
        return self._opened_at is None

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._opened_at = time.monotonic()

    @property
    def is_open(self) -> bool:
        self._maybe_reset()
        return self._opened_at is not None


async def iter_file(handle: BinaryIO) -> AsyncIterator[bytes]:
    loop = asyncio.get_running_loop()
    try:
        while True:
            data = await loop.run_in_executor(None, handle.read, CHUNK_SIZE)
            if not data:
                break
            yield data
    finally:
        handle.close()


class LocalObjectBackend(ObjectBackend):
    """Stores each body under the SHA-256 of its cache key.

    A file holds one JSON metadata line followed by the body bytes, so a
    single ``os.replace`` publishes the body and its content type together.
    """

    def __init__(self, storage_path: Path):
        self._root = Path(storage_path)

    def object_path(self, cache_key: str) -> Path:
        digest = hashlib.sha256(cache_key.encode("utf-8")).hexdigest()
        return self._root / digest[:2] / digest

    async def write(self, cache_key: str, body: bytes, content_type: Optional[str]) -> None:
        path = self.object_path(cache_key)
        header = json.dumps({"cache_key": cache_key, "content_type": content_type}).encode("utf-8") + b"\n"

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            staging = path.parent / f"{path.name}.{uuid4().hex}.tmp"
            with staging.open("wb") as handle:
                handle.write(header)
                handle.write(body)
            os.replace(staging, path)

        await asyncio.to_thread(_write)

    async def read(self, cache_key: str) -> CachedObject:
        path = self.object_path(cache_key)

        def _open() -> tuple[BinaryIO, dict, int]:
            handle = path.open("rb")
            try:
                header = handle.readline()
                metadata = json.loads(header)
                size = os.fstat(handle.fileno()).st_size - len(header)
            except (OSError, ValueError):
                handle.close()
                raise
            return handle, metadata, size

        try:
            handle, metadata, size = await asyncio.to_thread(_open)
        except FileNotFoundError:
            raise _cache_miss() from None
        return CachedObject(
            content_type=metadata.get("content_type") or DEFAULT_CONTENT_TYPE,
            chunks=iter_file(handle),
            size=size,
        )

    def status(self) -> dict[str, object]:
        self._root.mkdir(parents=True, exist_ok=True)
        return {
            "backend": "local",
            "storage_path": str(self._root),
            "writable": os.access(self._root, os.W_OK),
        }


class S3ObjectBackend(ObjectBackend):
    def __init__(self, settings: EdgeProxySettings):
        self._settings = settings
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = settings.s3_bucket
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)
        self._breaker = CircuitBreaker(
            failure_threshold=settings.s3_circuit_breaker_failures,
            reset_timeout=settings.s3_circuit_breaker_reset_seconds,
        )

    async def write(self, cache_key: str, body: bytes, content_type: Optional[str]) -> None:
        kwargs: dict[str, object] = {"Bucket": self._bucket, "Key": cache_key, "Body": body}
        if content_type:
            kwargs["ContentType"] = content_type
        await self._call_with_retry(self._client.put_object, **kwargs)

    async def read(self, cache_key: str) -> CachedObject:
        response = await self._call_with_retry(self._client.get_object, Bucket=self._bucket, Key=cache_key)
        length = response.get("ContentLength")
        return CachedObject(
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            chunks=self._iter_body(response["Body"]),
            size=int(length) if length is not None else None,
        )

    @staticmethod
    async def _iter_body(body) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await asyncio.to_thread(body.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            close = getattr(body, "close", None)
            if close is not None:
                close()

    def status(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "bucket": self._bucket,
            "endpoint": self._settings.s3_endpoint_url,
            "circuit_open": self._breaker.is_open,
        }

    def _is_not_found(self, exc: Exception) -> bool:
        no_such_key = getattr(getattr(self._client, "exceptions", None), "NoSuchKey", None)
        if no_such_key is not None and isinstance(exc, no_such_key):
            return True
        if isinstance(exc, ClientError):
            return exc.response.get("Error", {}).get("Code", "") in NOT_FOUND_CODES
        return False

    async def _call_with_retry(self, func: Callable[..., object], **kwargs):
        if not self._breaker.allow_request():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Object store temporarily unavailable",
            )

        attempt = 0
        while True:
            try:
                result = await asyncio.to_thread(func, **kwargs)
                self._breaker.record_success()
                return result
            except Exception as exc:  # noqa: BLE001
                if self._is_not_found(exc):
                    self._breaker.record_success()
                    raise _cache_miss() from exc
                attempt += 1
                if attempt > self._max_retries:
                    self._breaker.record_failure()
                    raise HTTPException(
                        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                        detail="Object store temporarily unavailable",
                    ) from exc
                delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
                if delay:
                    await asyncio.sleep(delay)


class ObjectStore:
    """Best-effort get/put of cached bodies on top of an :class:`ObjectBackend`."""

    def __init__(self, backend: ObjectBackend) -> None:
        self.backend = backend

    async def get(self, cache_key: str) -> Optional[CachedObject]:
        try:
            return await self.backend.read(cache_key)
        except HTTPException as exc:
            if exc.status_code == status.HTTP_404_NOT_FOUND:
                return None
            OBJECT_LOOKUP_ERRORS_COUNTER.inc()
            LOGGER.warning("object_lookup_failed", cache_key=cache_key, error=exc.detail)
            return None
        except Exception as exc:  # noqa: BLE001
            OBJECT_LOOKUP_ERRORS_COUNTER.inc()
            LOGGER.warning("object_lookup_failed", cache_key=cache_key, error=str(exc))
            return None

    async def put(self, cache_key: str, body: bytes, content_type: Optional[str]) -> None:
        try:
            await self.backend.write(cache_key, body, content_type)
        except HTTPException as exc:
            OBJECT_WRITE_ERRORS_COUNTER.inc()
            LOGGER.warning("object_write_failed", cache_key=cache_key, error=exc.detail)
            return
        except Exception as exc:  # noqa: BLE001
            OBJECT_WRITE_ERRORS_COUNTER.inc()
            LOGGER.warning("object_write_failed", cache_key=cache_key, error=str(exc))
            return
        BYTES_WRITTEN_COUNTER.inc(len(body))
        LOGGER.debug("object_stored", cache_key=cache_key, bytes=len(body), content_type=content_type)

    def status(self) -> dict[str, object]:
        return self.backend.status()


def build_backend(settings: EdgeProxySettings) -> ObjectBackend:
    if settings.s3_bucket:
        if not settings.s3_endpoint_url and not settings.s3_region:
            raise RuntimeError("S3 configuration incomplete for edge proxy")
        return S3ObjectBackend(settings)
    return LocalObjectBackend(settings.storage_path)
