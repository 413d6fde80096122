"""Process-wide metrics for pflow.

``metrics_registry`` is shared by the engine client, the coordinator and the
poller, and is rendered by ``GET /metrics``.
"""
from .definitions import DEFAULT_METRIC_DEFINITIONS, MetricDefinition, register_definitions
from .exporters import PrometheusExporter
from .registry import CounterMetric, DistributionMetric, MetricsRegistry, track_duration

metrics_registry = MetricsRegistry()
register_definitions(metrics_registry)

__all__ = [
    "CounterMetric",
    "DEFAULT_METRIC_DEFINITIONS",
    "DistributionMetric",
    "MetricDefinition",
    "MetricsRegistry",
    "PrometheusExporter",
    "metrics_registry",
    "register_definitions",
    "track_duration",
]
