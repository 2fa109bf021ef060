"""OpenTelemetry tracing for the feed jobs and the read API.

Tracing is off unless ``OTEL_ENABLED`` is set. When it is off every helper
here is a no-op, and spans come from the API's default no-op tracer.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.b3 import B3MultiFormat
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from metrocast.core.config import Settings

logger = logging.getLogger(__name__)

TRACER_NAME = "metrocast"


def parse_otlp_headers(raw: str | None) -> dict[str, str] | None:
    """Parse ``key=value,key2=value2`` exporter headers.

    >>> parse_otlp_headers("x-token=abc, tenant=metro")
    {'x-token': 'abc', 'tenant': 'metro'}
    """
    if not raw:
        return None
    headers = {}
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            logger.warning("Ignoring malformed OTLP header %r", pair.strip())
            continue
        headers[key.strip()] = value.strip()
    return headers or None


def configure_opentelemetry(settings: Settings) -> bool:
    """Install the OTLP tracer provider. Returns whether tracing is active."""
    if not settings.otel_enabled:
        logger.info("OpenTelemetry tracing is disabled")
        return False

    try:
        # Upstream proxies forward B3 headers.
        set_global_textmap(B3MultiFormat())
        resource = Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": settings.otel_service_version,
                "deployment.environment": settings.environment,
            }
        )
        tracer_provider = TracerProvider(resource=resource)
        tracer_provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(
                    endpoint=settings.otel_exporter_otlp_endpoint,
                    headers=parse_otlp_headers(settings.otel_exporter_otlp_headers),
                )
            )
        )
        trace.set_tracer_provider(tracer_provider)
    except Exception as e:
        logger.warning("Failed to configure OpenTelemetry: %s", e)
        return False

    logger.info(
        "OpenTelemetry exporting '%s' spans to %s",
        settings.otel_service_name,
        settings.otel_exporter_otlp_endpoint,
    )
    return True


def instrument_fastapi(app: Any, enabled: bool = False) -> None:
    """Trace every API request."""
    if not enabled:
        return
    try:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="metrics")
    except Exception as e:
        logger.warning("Failed to instrument FastAPI: %s", e)


def instrument_httpx(enabled: bool = False) -> None:
    """Trace feed downloads and webhook calls."""
    if not enabled:
        return
    try:
        HTTPXClientInstrumentor().instrument()
    except Exception as e:
        logger.warning("Failed to instrument HTTPX: %s", e)


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)


@contextmanager
def feed_cycle_span(job: str, tracer: trace.Tracer | None = None) -> Iterator[trace.Span]:
    """Span around one feed cycle; a raised error marks the span failed."""
    tracer = tracer or get_tracer()
    with tracer.start_as_current_span(
        f"feed.{job}", record_exception=False, set_status_on_exception=False
    ) as span:
        span.set_attribute("metrocast.feed.job", job)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise
