"""Logging and tracing setup for the callcenter API."""

from __future__ import annotations

import logging
from logging.config import dictConfig

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from apps.api.core.config import Settings

_tracer_provider: TracerProvider | None = None


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` header strings, skipping malformed items."""

    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def configure_logging(settings: Settings) -> logging.Logger:
    """Install a stream handler on the root logger using the configured level and format."""

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": settings.log_format}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level,
                }
            },
            "loggers": {
                # SQL statements are only interesting when echo is requested.
                "sqlalchemy.engine": {"level": logging.INFO if settings.db_echo else logging.WARNING},
            },
            "root": {"handlers": ["console"], "level": level},
        }
    )

    logger = logging.getLogger(settings.app_name)
    logger.info("Logging configured at %s for %s", logging.getLevelName(level), settings.environment)
    return logger


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Install an OTLP tracer provider when tracing is enabled."""

    global _tracer_provider

    if _tracer_provider is not None or not settings.otel_enabled:
        return None

    provider = TracerProvider(
        resource=Resource(
            attributes={
                "service.name": settings.otel_service_name,
                "deployment.environment": settings.environment,
            }
        )
    )

    exporter_kwargs: dict[str, object] = {}
    if settings.otel_exporter_otlp_endpoint:
        exporter_kwargs["endpoint"] = settings.otel_exporter_otlp_endpoint
    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers)
    if headers:
        exporter_kwargs["headers"] = headers

    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))
    trace.set_tracer_provider(provider)
    _tracer_provider = provider
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    global _tracer_provider

    if provider is None:
        return
    provider.shutdown()
    _tracer_provider = None
