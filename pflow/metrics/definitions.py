"""Metric definitions used across the service."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple

from .registry import MetricsRegistry


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name="tickets_transitions_total",
        metric_type="counter",
        description="Ticket mutations committed to the store, by resulting event.",
        label_names=("event",),
    ),
    MetricDefinition(
        name="event_publish_failures_total",
        metric_type="counter",
        description="Domain events that could not be handed to the message bus.",
        label_names=("event",),
    ),
    MetricDefinition(
        name="engine_requests_total",
        metric_type="counter",
        description="Calls made to the process engine, by operation and outcome.",
        label_names=("operation", "outcome"),
    ),
    MetricDefinition(
        name="worker_tasks_total",
        metric_type="counter",
        description="External tasks seen by the poller, by outcome.",
        label_names=("outcome",),
    ),
    MetricDefinition(
        name="worker_poll_duration_seconds",
        metric_type="distribution",
        description="Duration of a single poller tick in seconds.",
    ),
)


def register_definitions(
    registry: MetricsRegistry,
    definitions: Iterable[MetricDefinition] = DEFAULT_METRIC_DEFINITIONS,
) -> None:
    """Create every metric in ``definitions`` so it is exported before its first update."""

    factories = {"counter": registry.counter, "distribution": registry.distribution}
    for definition in definitions:
        factory = factories.get(definition.metric_type)
        if factory is None:
            raise ValueError(f"Unsupported metric type {definition.metric_type!r} for {definition.name}")
        factory(definition.name, description=definition.description, label_names=definition.label_names)
