"""
Request metrics for the inference gateway: Prometheus exposition and optional OTLP export.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, Optional

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)


@dataclass
class InferenceMetrics:
    """Rolling inference statistics."""
    request_count: int = 0
    error_count: int = 0
    generated_tokens: int = 0
    active_requests: int = 0
    last_latency: float = 0.0
    tokens_per_second: float = 0.0


class PrometheusMetrics:
    """Prometheus instruments bound to a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.requests = Counter(
            "llmserve_requests_total",
            "Total inference requests",
            ["route", "status"],
            registry=self.registry,
        )
        self.latency = Histogram(
            "llmserve_request_latency_seconds",
            "Request latency",
            ["route"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.generated_tokens = Counter(
            "llmserve_generated_tokens_total",
            "Total generated tokens",
            registry=self.registry,
        )
        self.active = Gauge(
            "llmserve_active_requests",
            "In-flight inference requests",
            registry=self.registry,
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)

    content_type = CONTENT_TYPE_LATEST


class OpenTelemetryExporter:
    """Exports request spans and latency histograms over OTLP/HTTP."""

    def __init__(self, endpoint: Optional[str] = None, service_name: str = "llmserve"):
        self.endpoint = (endpoint or "http://localhost:4318").rstrip("/")
        resource = Resource.create({"service.name": service_name})

        self.tracer_provider = TracerProvider(resource=resource)
        self.tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{self.endpoint}/v1/traces"))
        )

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=f"{self.endpoint}/v1/metrics"),
            export_interval_millis=5000,
        )
        self.meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])

        self.tracer = self.tracer_provider.get_tracer(__name__)
        meter = self.meter_provider.get_meter(__name__)
        self.latency_histogram = meter.create_histogram(
            "llmserve.request.latency",
            unit="s",
            description="Inference request latency",
        )
        logger.info("OpenTelemetry exporter configured for %s", self.endpoint)

    def record_request(self, route: str, status: int, latency: float, **attributes):
        attrs = {"route": route, "status": status, **attributes}
        with self.tracer.start_as_current_span("inference_request") as span:
            span.set_attributes({"latency": latency, **attrs})
        self.latency_histogram.record(latency, attrs)

    def shutdown(self):
        self.tracer_provider.shutdown()
        self.meter_provider.shutdown()


class ObservabilityManager:
    """Single entry point the server uses to record request outcomes."""

    def __init__(self, enable_prometheus: bool = True, otlp_endpoint: Optional[str] = None, history: int = 1000):
        self.stats = InferenceMetrics()
        self.latency_history: deque = deque(maxlen=history)

        self.prometheus = PrometheusMetrics() if enable_prometheus else None
        self.otlp = OpenTelemetryExporter(otlp_endpoint) if otlp_endpoint else None

    def request_started(self):
        self.stats.active_requests += 1
        if self.prometheus:
            self.prometheus.active.inc()

    def request_finished(self, route: str, status: int, latency: float, generated_tokens: int = 0):
        self.stats.active_requests = max(self.stats.active_requests - 1, 0)
        self.stats.request_count += 1
        if status >= 500:
            self.stats.error_count += 1
        self.stats.generated_tokens += generated_tokens
        self.stats.last_latency = latency
        if latency > 0 and generated_tokens:
            self.stats.tokens_per_second = generated_tokens / latency
        self.latency_history.append((time.time(), latency))

        if self.prometheus:
            self.prometheus.active.dec()
            self.prometheus.requests.labels(route=route, status=str(status)).inc()
            self.prometheus.latency.labels(route=route).observe(latency)
            if generated_tokens:
                self.prometheus.generated_tokens.inc(generated_tokens)

        if self.otlp:
            self.otlp.record_request(route, status, latency, generated_tokens=generated_tokens)

    def get_summary(self) -> Dict[str, Any]:
        latencies = [latency for _, latency in self.latency_history]
        return {
            "request_count": self.stats.request_count,
            "error_count": self.stats.error_count,
            "active_requests": self.stats.active_requests,
            "generated_tokens": self.stats.generated_tokens,
            "avg_latency": sum(latencies) / len(latencies) if latencies else 0.0,
            "tokens_per_second": self.stats.tokens_per_second,
        }

    def shutdown(self):
        if self.otlp:
            self.otlp.shutdown()
