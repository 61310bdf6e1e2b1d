"""Metrics module - request metrics, Prometheus and OpenTelemetry export, health reports"""

from .observability import (
    ObservabilityManager,
    PrometheusMetrics,
    OpenTelemetryExporter,
    InferenceMetrics,
)

from .health import (
    HealthManager,
    HealthReport,
    HealthStatus,
)

__all__ = [
    "ObservabilityManager",
    "PrometheusMetrics",
    "OpenTelemetryExporter",
    "InferenceMetrics",
    "HealthManager",
    "HealthReport",
    "HealthStatus",
]
