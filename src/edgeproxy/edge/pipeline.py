"""Request resolution: redirects, cached bodies, then the origin."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import httpx
from fastapi import Request, Response, status
from fastapi.responses import PlainTextResponse, RedirectResponse, StreamingResponse
from opentelemetry import trace
from pydantic import ValidationError
from redis.asyncio import from_url as redis_from_url
import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter, LabeledCounter
from ..common.schemas import RedirectRecord
from ..common.settings import EdgeProxySettings
from .objects import ObjectStore, build_backend
from .origin import OriginFetcher, OriginOutcome, OriginResponse, classify
from .paths import PathClassifier, cache_key
from .redirects import RedirectStore
from .tasks import BackgroundWriter, SingleFlight

TRACER = trace.get_tracer("edgeproxy.pipeline")

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("edge_requests_total", "Requests handled by the edge pipeline"))
RESOLUTION_COUNTER = GLOBAL_REGISTRY.register(
    LabeledCounter("edge_resolutions_total", "outcome", "Terminal pipeline states reached")
)
ORIGIN_FETCH_COUNTER = GLOBAL_REGISTRY.register(Counter("edge_origin_fetches_total", "Requests forwarded to the origin"))
ORIGIN_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edge_origin_errors_total", "Origin fetches that failed at the transport level")
)
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edge_cache_bytes_served_total", "Bytes served from the object store")
)


class Resolution(str, Enum):
    BYPASS = "bypass"
    REDIRECT_HIT = "redirect_hit"
    CACHE_HIT = "cache_hit"
    DISABLED = "disabled"
    ORIGIN_REDIRECT = "origin_redirect"
    ORIGIN_CACHED = "origin_cached"
    ORIGIN_PASSTHROUGH = "origin_passthrough"
    ORIGIN_ERROR = "origin_error"


@dataclass
class EdgeContext:
    """Process-wide collaborators handed to the pipeline."""

    classifier: PathClassifier
    redirects: RedirectStore
    objects: ObjectStore
    origin: OriginFetcher
    writer: BackgroundWriter = field(default_factory=BackgroundWriter)
    backend_enabled: bool = True
    cache_control: str = "public, max-age=3600"
    single_flight: Optional[SingleFlight] = None
    logger: structlog.typing.FilteringBoundLogger = field(
        default_factory=lambda: structlog.get_logger("edgeproxy.pipeline")
    )

    @classmethod
    def from_settings(cls, settings: EdgeProxySettings) -> "EdgeContext":
        redis = redis_from_url(str(settings.redis_url), decode_responses=False)
        http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.origin_timeout_seconds))
        return cls(
            classifier=PathClassifier(settings.non_cacheable_prefixes),
            redirects=RedirectStore(redis, key_prefix=settings.redirect_key_prefix),
            objects=ObjectStore(build_backend(settings)),
            origin=OriginFetcher(
                http_client,
                str(settings.origin_url),
                follow_redirects=settings.origin_follow_redirects,
                preserve_host=settings.origin_preserve_host,
            ),
            backend_enabled=settings.backend_enabled,
            cache_control=settings.cache_control,
            single_flight=SingleFlight() if settings.single_flight else None,
        )

    async def aclose(self, drain_timeout: float | None = None) -> None:
        await self.writer.drain(drain_timeout)
        await self.origin.close()
        await self.redirects.close()


def relay(response: OriginResponse, cache_control: Optional[str] = None) -> Response:
    relayed = Response(content=response.body, status_code=response.status_code)
    for name, value in response.relay_headers():
        relayed.headers.append(name, value)
    if cache_control:
        relayed.headers["cache-control"] = cache_control
    return relayed


class ResolutionPipeline:
    """Resolves one request to exactly one response.

    Gates run in order and the first that answers wins: non-cacheable bypass,
    stored redirect, stored body, backend-disabled 404, then the origin. Store
    writes triggered by an origin response run on the context's background
    writer and never change the response already chosen.
    """

    def __init__(self, context: EdgeContext) -> None:
        self.context = context

    async def resolve(self, request: Request) -> Response:
        key = cache_key(request.url)
        log = self.context.logger.bind(cache_key=key)
        REQUEST_COUNTER.inc()
        log.debug("request_received", method=request.method)
        with TRACER.start_as_current_span("edge.resolve", attributes={"edge.cache_key": key}) as span:
            response, resolution = await self._resolve(request, key, log)
            span.set_attribute("edge.resolution", resolution.value)
            span.set_attribute("http.status_code", response.status_code)
        RESOLUTION_COUNTER.inc(resolution.value)
        return response

    async def _resolve(self, request: Request, key: str, log) -> tuple[Response, Resolution]:
        ctx = self.context

        if ctx.classifier.is_non_cacheable(request.url.path):
            log.debug("cache_bypass", path=request.url.path)
            return await self._bypass(request, key, log)

        with TRACER.start_as_current_span("edge.redirect_lookup"):
            record = await ctx.redirects.get(key)
        if record is not None:
            log.debug("redirect_hit", target=record.target, type=record.status_code)
            return RedirectResponse(record.target, status_code=record.status_code), Resolution.REDIRECT_HIT

        with TRACER.start_as_current_span("edge.cache_lookup"):
            cached = await ctx.objects.get(key)
        if cached is not None:
            log.debug("cache_hit", content_type=cached.content_type, bytes=cached.size)
            if cached.size:
                BYTES_SERVED_COUNTER.inc(cached.size)
            response = StreamingResponse(
                cached.chunks,
                status_code=status.HTTP_200_OK,
                headers={"content-type": cached.content_type, "cache-control": ctx.cache_control},
            )
            return response, Resolution.CACHE_HIT

        log.debug("cache_miss")

        if not ctx.backend_enabled:
            log.debug("content_not_found")
            return PlainTextResponse("Not Found", status_code=status.HTTP_404_NOT_FOUND), Resolution.DISABLED

        try:
            origin_response, leader = await self._fetch(request, key)
        except Exception as exc:  # noqa: BLE001 - any fetch failure answers with the generic 500
            ORIGIN_ERRORS_COUNTER.inc()
            log.error("origin_fetch_failed", error=str(exc), error_type=type(exc).__name__)
            return self._origin_error(), Resolution.ORIGIN_ERROR

        return self._handle_origin(key, origin_response, leader, log)

    async def _bypass(self, request: Request, key: str, log) -> tuple[Response, Resolution]:
        if not self.context.backend_enabled:
            return PlainTextResponse("Not Found", status_code=status.HTTP_404_NOT_FOUND), Resolution.DISABLED
        ORIGIN_FETCH_COUNTER.inc()
        try:
            with TRACER.start_as_current_span("edge.origin_fetch", attributes={"edge.bypass": True}):
                origin_response = await self.context.origin.fetch(request, follow_redirects=False)
        except Exception as exc:  # noqa: BLE001 - any fetch failure answers with the generic 500
            ORIGIN_ERRORS_COUNTER.inc()
            log.error("origin_fetch_failed", error=str(exc), error_type=type(exc).__name__)
            return self._origin_error(), Resolution.ORIGIN_ERROR
        return relay(origin_response), Resolution.BYPASS

    async def _fetch(self, request: Request, key: str) -> tuple[OriginResponse, bool]:
        async def _do_fetch() -> OriginResponse:
            ORIGIN_FETCH_COUNTER.inc()
            with TRACER.start_as_current_span("edge.origin_fetch"):
                return await self.context.origin.fetch(request)

        single_flight = self.context.single_flight
        if single_flight is not None and request.method == "GET":
            return await single_flight.run(key, _do_fetch)
        return await _do_fetch(), True

    def _handle_origin(
        self,
        key: str,
        origin_response: OriginResponse,
        leader: bool,
        log,
    ) -> tuple[Response, Resolution]:
        ctx = self.context
        outcome = classify(origin_response, cacheable=True)

        if outcome in (OriginOutcome.ENGINE_REDIRECT, OriginOutcome.EXPLICIT_REDIRECT):
            target, redirect_status = origin_response.location, origin_response.status_code
            if outcome is OriginOutcome.ENGINE_REDIRECT:
                target, redirect_status = origin_response.url, origin_response.redirect_status
            try:
                if outcome is OriginOutcome.EXPLICIT_REDIRECT:
                    target = ctx.origin.redirect_target(origin_response)
                record = RedirectRecord(target=target, status_code=redirect_status)
            except (httpx.InvalidURL, ValidationError) as exc:
                log.warning("redirect_not_storable", target=target, type=redirect_status, error=str(exc))
                return relay(origin_response, ctx.cache_control), Resolution.ORIGIN_PASSTHROUGH
            log.debug("redirect_detected", target=record.target, type=record.status_code, outcome=outcome.value)
            if leader:
                ctx.writer.schedule(ctx.redirects.put(key, record), name=f"redirect-put:{key}")
            return RedirectResponse(record.target, status_code=record.status_code), Resolution.ORIGIN_REDIRECT

        if outcome is OriginOutcome.CACHEABLE:
            log.debug("caching_content", status=origin_response.status_code, content_type=origin_response.content_type)
            if leader:
                ctx.writer.schedule(
                    ctx.objects.put(key, origin_response.body, origin_response.content_type),
                    name=f"object-put:{key}",
                )
            return relay(origin_response, ctx.cache_control), Resolution.ORIGIN_CACHED

        log.debug("origin_passthrough", status=origin_response.status_code)
        return relay(origin_response, ctx.cache_control), Resolution.ORIGIN_PASSTHROUGH

    @staticmethod
    def _origin_error() -> Response:
        return PlainTextResponse("An error occurred", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
