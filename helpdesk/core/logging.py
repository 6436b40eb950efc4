"""Logging and tracing setup for the helpdesk service.

Log records emitted inside a lifecycle span carry ``trace_id`` and ``span_id``
attributes, so a status change or SLA evaluation can be followed from the log
line to its trace.
"""

from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from helpdesk.core.config import Settings

_TRACER_INITIALISED = False


class SpanContextFilter(logging.Filter):
    """Stamp the active OpenTelemetry span ids onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = "-"
            record.span_id = "-"
        return True


def parse_headers(header_string: str | None) -> dict[str, str]:
    """Parse ``key=value,key=value`` OTLP header strings, skipping malformed items."""

    headers: dict[str, str] = {}
    for item in (header_string or "").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def logging_config(settings: Settings) -> dict[str, Any]:
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"span_context": {"()": SpanContextFilter}},
        "formatters": {"default": {"format": settings.log_format}},
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "filters": ["span_context"],
                "level": level,
            }
        },
        "root": {"handlers": ["default"], "level": level},
        "loggers": {"helpdesk": {"level": level, "propagate": True}},
    }


def configure_logging(settings: Settings) -> logging.Logger:
    """Install the service logging config and return the ``helpdesk`` logger."""

    config = logging_config(settings)
    dictConfig(config)
    return logging.getLogger("helpdesk")


def _span_exporter(settings: Settings) -> OTLPSpanExporter:
    kwargs: dict[str, Any] = {}
    if settings.otel_exporter_otlp_endpoint:
        kwargs["endpoint"] = settings.otel_exporter_otlp_endpoint
    headers = parse_headers(settings.otel_exporter_otlp_headers)
    if headers:
        kwargs["headers"] = headers
    return OTLPSpanExporter(**kwargs)


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Install an OTLP-exporting tracer provider when tracing is enabled."""

    global _TRACER_INITIALISED

    if _TRACER_INITIALISED or not settings.otel_enabled:
        return None

    resource = Resource(
        attributes={
            "service.name": settings.otel_service_name,
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(_span_exporter(settings)))

    trace.set_tracer_provider(provider)
    _TRACER_INITIALISED = True
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    if provider is None:
        return

    global _TRACER_INITIALISED
    provider.shutdown()
    _TRACER_INITIALISED = False
