from __future__ import annotations

import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Span

from app.middleware.correlation_id import CORRELATION_HEADER, MAX_CORRELATION_ID_LENGTH


SERVICE_NAME = "company-service"

_provider: TracerProvider | None = None
_exporters_installed = False


def _provider_for(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                "service.name": os.getenv("OTEL_SERVICE_NAME", service_name),
                "service.version": os.getenv("APP_VERSION", "0.1.0"),
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str = SERVICE_NAME, enable: bool = True) -> TracerProvider | None:
    """Install the SDK tracer provider.

    Spans go to OTLP/HTTP when ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set and to stdout
    when ``OTEL_CONSOLE_EXPORTER=true``. Repeated calls reuse the provider.
    """
    global _exporters_installed

    if not enable:
        return None

    provider = _provider_for(service_name)
    if not _exporters_installed:
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        if endpoint:
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        _exporters_installed = True
    return provider


def setup_inmemory_otel(service_name: str = SERVICE_NAME) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider_for(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


@contextmanager
def company_span(
    tracer: trace.Tracer,
    name: str,
    *,
    company_id: uuid.UUID,
    correlation_id: str | None,
    **ids: uuid.UUID,
) -> Iterator[Span]:
    """Span for a company-scoped mutation, tagged with the company, resource ids and correlation id."""
    with tracer.start_as_current_span(name) as span:
        span.set_attribute("company_id", str(company_id))
        for key, value in ids.items():
            span.set_attribute(key, str(value))
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)
        yield span


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        raw = headers.get(CORRELATION_HEADER.encode("latin-1"), b"").decode("latin-1").strip()
        if raw and len(raw) <= MAX_CORRELATION_ID_LENGTH:
            span.set_attribute("correlation_id", raw)

    return server_request_hook
