"""Redirect records kept in Redis, keyed by cache key."""

from __future__ import annotations

from typing import Optional

from pydantic import ValidationError
from redis.asyncio import Redis
import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import RedirectRecord

LOGGER = structlog.get_logger("edgeproxy.redirects")

REDIRECT_LOOKUP_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edge_redirect_lookup_errors_total", "Redirect lookups that failed and degraded to a miss")
)
REDIRECT_WRITE_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edge_redirect_write_errors_total", "Redirect records that could not be persisted")
)


class RedirectStore:
    """Best-effort get/put of redirect records.

    Lookups never raise: an unreachable Redis or a record that does not parse
    is reported as absent. Writes log and swallow failures.
    """

    def __init__(self, redis: Redis, key_prefix: str = "") -> None:
        self._redis = redis
        self._prefix = key_prefix

    def _key(self, cache_key: str) -> str:
        return f"{self._prefix}{cache_key}"

    async def get(self, cache_key: str) -> Optional[RedirectRecord]:
        try:
            raw = await self._redis.get(self._key(cache_key))
        except Exception as exc:  # noqa: BLE001
            REDIRECT_LOOKUP_ERRORS_COUNTER.inc()
            LOGGER.warning("redirect_lookup_failed", cache_key=cache_key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return RedirectRecord.model_validate_json(raw)
        except ValidationError as exc:
            REDIRECT_LOOKUP_ERRORS_COUNTER.inc()
            LOGGER.warning("redirect_record_malformed", cache_key=cache_key, error=str(exc))
            return None

    async def put(self, cache_key: str, record: RedirectRecord) -> None:
        try:
            await self._redis.set(self._key(cache_key), record.to_json())
        except Exception as exc:  # noqa: BLE001
            REDIRECT_WRITE_ERRORS_COUNTER.inc()
            LOGGER.warning("redirect_write_failed", cache_key=cache_key, error=str(exc))
            return
        LOGGER.debug("redirect_stored", cache_key=cache_key, target=record.target, type=record.status_code)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("redis_ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        await self._redis.aclose()
