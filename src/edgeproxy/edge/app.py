"""Caching edge proxy in front of a WordPress-style origin."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
import structlog
from opentelemetry import trace

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Gauge, Histogram
from ..common.observability import configure_observability, instrument_fastapi_app
from ..common.settings import EdgeProxySettings
from .pipeline import EdgeContext, ResolutionPipeline

LOGGER = structlog.get_logger("edgeproxy.edge")
TRACER = trace.get_tracer("edgeproxy.edge")

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "edge_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Edge proxy request latency",
    )
)
PENDING_WRITES_GAUGE = GLOBAL_REGISTRY.register(
    Gauge("edge_background_writes_pending", "Store writes scheduled but not yet finished")
)


class EdgeProxyState:
    def __init__(self, settings: EdgeProxySettings, context: EdgeContext):
        self.settings = settings
        self.context = context
        self.pipeline = ResolutionPipeline(context)
        self.logger = LOGGER.bind(backend=context.objects.status().get("backend"))


def get_state(request: Request) -> EdgeProxyState:
    state = getattr(request.app.state, "edge_state", None)
    if state is None:
        raise RuntimeError("Edge proxy state not initialised")
    return state


def create_app(settings: Optional[EdgeProxySettings] = None, context: Optional[EdgeContext] = None) -> FastAPI:
    settings = settings or EdgeProxySettings()
    configure_observability(settings, "edgeproxy.edge")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        edge_context = context or EdgeContext.from_settings(settings)
        state = EdgeProxyState(settings, edge_context)
        app.state.edge_state = state
        state.logger.info(
            "edge_proxy_started",
            origin=str(settings.origin_url),
            backend_enabled=edge_context.backend_enabled,
            single_flight=edge_context.single_flight is not None,
        )
        try:
            yield
        finally:
            await edge_context.aclose(settings.write_drain_timeout_seconds)
            state.logger.info("edge_proxy_stopped")

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)
    admin = settings.admin_prefix

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.get(f"{admin}/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: EdgeProxyState = Depends(get_state)) -> dict:
        """Health check for readiness/liveness probes."""
        health: dict[str, object] = {"status": "healthy", "checks": {}}
        checks: dict[str, object] = health["checks"]  # type: ignore[assignment]

        try:
            backend_status = state.context.objects.status()
            checks["object_backend"] = backend_status.get("backend", "unknown")
        except Exception as exc:  # noqa: BLE001
            checks["object_backend"] = f"error: {exc}"
            health["status"] = "unhealthy"

        redis_ok = await state.context.redirects.ping()
        checks["redis"] = "ok" if redis_ok else "unreachable"
        if not redis_ok:
            health["status"] = "unhealthy"
        checks["pending_writes"] = state.context.writer.pending

        if health["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.get(f"{admin}/status")
    async def status_probe(state: EdgeProxyState = Depends(get_state)) -> JSONResponse:
        with TRACER.start_as_current_span("edge.status"):
            payload = dict(state.context.objects.status())
            payload.update(
                {
                    "backend_enabled": state.context.backend_enabled,
                    "origin": str(state.settings.origin_url),
                    "pending_writes": state.context.writer.pending,
                    "single_flight": state.context.single_flight is not None,
                    "non_cacheable_prefixes": list(state.context.classifier.prefixes),
                }
            )
            return JSONResponse(payload)

    @app.get(f"{admin}/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: EdgeProxyState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token, state.settings.metrics_allowed_networks)
        PENDING_WRITES_GAUGE.set(float(state.context.writer.pending))
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request, state: EdgeProxyState = Depends(get_state)) -> Response:
        return await state.pipeline.resolve(request)

    return app
