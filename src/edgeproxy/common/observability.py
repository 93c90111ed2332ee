"""Structured logging and tracing setup for the edge proxy process."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.asgi import OpenTelemetryMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor, SpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars

from .settings import EdgeProxySettings


# Chatty client libraries log every connection at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3")

_logging_configured = False
_tracer_configured = False
_httpx_instrumented = False


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def add_trace_context(_logger, _method_name: str, event_dict: dict) -> dict:
    """Attach the active span's ids so log lines join up with request traces."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict.setdefault("trace_id", format(span_context.trace_id, "032x"))
        event_dict.setdefault("span_id", format(span_context.span_id, "016x"))
    return event_dict


def configure_logging(service_name: str, level: str | int | None = None) -> None:
    """Route structlog events through stdlib logging as one JSON object per line."""

    global _logging_configured
    numeric_level = _log_level(level)
    if _logging_configured:
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True
    quiet_level = max(numeric_level, logging.WARNING)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            add_trace_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Parse ``key=value,key2=value2`` as used by OTEL_EXPORTER_OTLP_HEADERS."""
    result: Dict[str, str] = {}
    for item in (headers or "").split(","):
        key, _, value = item.partition("=")
        if key.strip() and value.strip():
            result[key.strip()] = value.strip()
    return result


def _span_processor(endpoint: Optional[str], headers: Optional[str]) -> SpanProcessor:
    if endpoint:
        return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers)))
    return SimpleSpanProcessor(InMemorySpanExporter())


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> None:
    """Install a sampling tracer provider once and instrument outbound httpx calls.

    Without an OTLP endpoint spans go to an in-memory exporter, so tracing
    stays cheap in development and in tests.
    """

    global _tracer_configured, _httpx_instrumented
    if _tracer_configured:
        return

    if not isinstance(trace.get_tracer_provider(), TracerProvider):
        ratio = max(0.0, min(1.0, sampler_ratio))
        provider = TracerProvider(
            resource=Resource.create({"service.name": service_name}),
            sampler=TraceIdRatioBased(ratio),
        )
        provider.add_span_processor(_span_processor(endpoint, headers))
        trace.set_tracer_provider(provider)
    _tracer_configured = True

    if not _httpx_instrumented:
        HTTPXClientInstrumentor().instrument()
        _httpx_instrumented = True


def configure_observability(settings: EdgeProxySettings, service_name: str) -> None:
    configure_logging(service_name, settings.effective_log_level)
    configure_tracing(
        service_name=service_name,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )


def instrument_fastapi_app(app) -> None:
    FastAPIInstrumentor.instrument_app(app, tracer_provider=trace.get_tracer_provider())
    if not any(getattr(m.cls, "__name__", "") == "OpenTelemetryMiddleware" for m in app.user_middleware):
        app.add_middleware(OpenTelemetryMiddleware, tracer_provider=trace.get_tracer_provider())
