"""OpenTelemetry configuration and initialization."""

from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger(__name__)


def configure_opentelemetry(
    service_name: str,
    service_version: str,
    otlp_endpoint: str,
    otlp_headers: str | None = None,
    enabled: bool = False,
) -> None:
    """Configure OpenTelemetry tracing for the application.

    Args:
        service_name: Name of the service
        service_version: Version of the service
        otlp_endpoint: OTLP collector endpoint
        otlp_headers: Optional OTLP headers
        enabled: Whether tracing is enabled
    """
    if not enabled:
        logger.info("OpenTelemetry tracing is disabled")
        return

    try:
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.version": service_version,
                "service.namespace": "shipyard",
            }
        )

        tracer_provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(tracer_provider)

        otlp_exporter = OTLPSpanExporter(
            endpoint=otlp_endpoint,
            headers=otlp_headers,
        )
        tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

        logger.info("OpenTelemetry configured for service '%s'", service_name)
        logger.info("OTLP endpoint: %s", otlp_endpoint)

    except Exception as e:
        logger.warning("Failed to configure OpenTelemetry: %s", e)
        logger.info("Application will continue without tracing")


def instrument_fastapi(app: Any, enabled: bool = False) -> None:
    """Instrument FastAPI application for tracing."""
    if not enabled:
        return

    try:
        FastAPIInstrumentor.instrument_app(app)
        logger.info("FastAPI instrumentation enabled")
    except Exception as e:
        logger.warning("Failed to instrument FastAPI: %s", e)


def instrument_httpx(enabled: bool = False) -> None:
    """Instrument httpx client for tracing of GitHub API calls."""
    if not enabled:
        return

    try:
        HTTPXClientInstrumentor().instrument()
        logger.info("HTTPX client instrumentation enabled")
    except Exception as e:
        logger.warning("Failed to instrument HTTPX: %s", e)
