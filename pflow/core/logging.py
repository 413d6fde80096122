"""Logging and tracing setup for the pflow service."""

from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from pflow import __version__
from pflow.core.config import Settings

logger = logging.getLogger(__name__)

# Transports of the process engine client (httpx) and the event publisher (aio-pika).
CLIENT_LOGGERS = ("httpx", "httpcore", "aio_pika", "aiormq")

WORKER_TOPIC_ATTRIBUTE = "pflow.worker.topic"


def _level(name: str, default: int) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else default


def logging_config(settings: Settings) -> dict[str, Any]:
    """Return the ``dictConfig`` mapping for the service and its client libraries.

    Client loggers never log below the service's own level, so ``LOG_LEVEL=ERROR``
    also silences reconnect warnings from the message bus.
    """

    level = _level(settings.log_level, logging.INFO)
    client_level = max(level, _level(settings.log_client_level, logging.WARNING))
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"plain": {"format": settings.log_format}},
        "handlers": {
            "console": {"class": "logging.StreamHandler", "formatter": "plain"},
        },
        "loggers": {
            "pflow": {"level": level},
            **{name: {"level": client_level} for name in CLIENT_LOGGERS},
        },
        "root": {"handlers": ["console"], "level": level},
    }


def configure_logging(settings: Settings) -> logging.Logger:
    dictConfig(logging_config(settings))
    return logging.getLogger("pflow")


def parse_otlp_headers(header_string: str | None) -> dict[str, str]:
    """Parse ``key=value,key=value`` exporter headers, skipping malformed items."""

    headers: dict[str, str] = {}
    for item in (header_string or "").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def tracer_resource(settings: Settings, *, worker_id: str | None = None) -> Resource:
    attributes: dict[str, str] = {
        "service.name": settings.otel_service_name,
        "service.version": __version__,
        "deployment.environment": settings.environment,
    }
    if worker_id:
        # Engine spans of a tick can then be matched to the worker holding the lock.
        attributes["service.instance.id"] = worker_id
        attributes[WORKER_TOPIC_ATTRIBUTE] = settings.worker_topic
    return Resource.create(attributes)


def init_tracer(settings: Settings, *, worker_id: str | None = None) -> TracerProvider | None:
    """Install an OTLP-exporting tracer provider when tracing is enabled.

    Returns ``None`` when tracing is off or another SDK provider is already
    installed; only the returned provider should be passed to ``shutdown_tracer``.
    """

    if not settings.otel_enabled:
        return None
    if isinstance(trace.get_tracer_provider(), TracerProvider):
        logger.debug("Tracer provider already installed, keeping it")
        return None

    exporter = OTLPSpanExporter(
        endpoint=settings.otel_exporter_otlp_endpoint or None,
        headers=parse_otlp_headers(settings.otel_exporter_otlp_headers) or None,
    )
    provider = TracerProvider(resource=tracer_resource(settings, worker_id=worker_id))
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    logger.info("Exporting traces as %s", settings.otel_service_name)
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    if provider is not None:
        provider.shutdown()
