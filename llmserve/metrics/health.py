"""
Health reporting for the inference gateway host and its request traffic.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Health status levels."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


@dataclass
class HealthCheck:
    """Individual health check definition."""
    name: str
    check_function: Callable[[], float]
    warning_threshold: float
    critical_threshold: float
    description: str = ""


@dataclass
class HealthReport:
    """Health report for a component."""
    component: str
    status: HealthStatus
    checks: Dict[str, bool] = field(default_factory=dict)
    metrics: Dict[str, float] = field(default_factory=dict)
    message: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "component": self.component,
            "status": self.status.value,
            "checks": self.checks,
            "metrics": self.metrics,
            "message": self.message,
            "timestamp": self.timestamp,
        }


def worst_status(statuses: List[HealthStatus]) -> HealthStatus:
    if HealthStatus.CRITICAL in statuses:
        return HealthStatus.CRITICAL
    if HealthStatus.WARNING in statuses:
        return HealthStatus.WARNING
    if statuses and all(s == HealthStatus.UNKNOWN for s in statuses):
        return HealthStatus.UNKNOWN
    return HealthStatus.HEALTHY


class SystemHealthMonitor:
    """Monitors host CPU, memory, disk and GPU memory utilisation."""

    def __init__(self, cpu_interval: Optional[float] = None):
        self.cpu_interval = cpu_interval
        self.checks = [
            HealthCheck("cpu_usage", self._cpu_usage, 80.0, 95.0, "CPU utilization percentage"),
            HealthCheck("memory_usage", self._memory_usage, 85.0, 95.0, "Memory utilization percentage"),
            HealthCheck("disk_usage", self._disk_usage, 85.0, 95.0, "Disk space utilization percentage"),
            HealthCheck("gpu_memory_usage", self._gpu_memory_usage, 90.0, 98.0, "GPU memory utilization percentage"),
        ]

    def _cpu_usage(self) -> float:
        return psutil.cpu_percent(interval=self.cpu_interval)

    def _memory_usage(self) -> float:
        return psutil.virtual_memory().percent

    def _disk_usage(self) -> float:
        disk = psutil.disk_usage("/")
        return (disk.used / disk.total) * 100

    def _gpu_memory_usage(self) -> float:
        import torch

        if not torch.cuda.is_available() or not torch.cuda.is_initialized():
            return 0.0
        max_usage = 0.0
        for i in range(torch.cuda.device_count()):
            used = torch.cuda.memory_allocated(i)
            total = torch.cuda.get_device_properties(i).total_memory
            max_usage = max(max_usage, (used / total) * 100)
        return max_usage

    def get_health_report(self) -> HealthReport:
        """Generate system health report."""
        checks: Dict[str, bool] = {}
        metrics: Dict[str, float] = {}
        statuses = [HealthStatus.HEALTHY]
        messages = []

        for check in self.checks:
            try:
                value = check.check_function()
            except Exception as e:
                logger.warning("Health check %s failed: %s", check.name, e)
                checks[check.name] = False
                statuses.append(HealthStatus.UNKNOWN)
                messages.append(f"{check.name} check failed: {e}")
                continue

            metrics[check.name] = value
            checks[check.name] = value < check.critical_threshold
            if value >= check.critical_threshold:
                statuses.append(HealthStatus.CRITICAL)
                messages.append(f"{check.name} critical: {value:.1f}%")
            elif value >= check.warning_threshold:
                statuses.append(HealthStatus.WARNING)
                messages.append(f"{check.name} warning: {value:.1f}%")

        return HealthReport(
            component="system",
            status=worst_status(statuses),
            checks=checks,
            metrics=metrics,
            message="; ".join(messages) if messages else "All systems normal",
        )


class InferenceHealthMonitor:
    """Derives inference health from request statistics."""

    def __init__(self, stats_provider: Callable[[], Dict[str, Any]], max_active: int = 100,
                 max_error_rate: float = 5.0, max_avg_latency: float = 10.0):
        self.stats_provider = stats_provider
        self.max_active = max_active
        self.max_error_rate = max_error_rate
        self.max_avg_latency = max_avg_latency

    def get_health_report(self) -> HealthReport:
        """Generate inference health report."""
        stats = self.stats_provider()
        statuses = [HealthStatus.HEALTHY]
        checks = {}
        messages = []

        request_count = stats.get("request_count", 0)
        error_rate = (stats.get("error_count", 0) / max(request_count, 1)) * 100
        checks["low_error_rate"] = error_rate < self.max_error_rate
        if not checks["low_error_rate"]:
            statuses.append(HealthStatus.WARNING)
            messages.append(f"High error rate: {error_rate:.1f}%")

        avg_latency = stats.get("avg_latency", 0.0)
        checks["reasonable_latency"] = avg_latency < self.max_avg_latency
        if not checks["reasonable_latency"]:
            statuses.append(HealthStatus.WARNING)
            messages.append(f"High latency: {avg_latency:.2f}s")

        active = stats.get("active_requests", 0)
        checks["queue_manageable"] = active < self.max_active
        if not checks["queue_manageable"]:
            statuses.append(HealthStatus.CRITICAL)
            messages.append(f"Request queue overloaded: {active}")

        return HealthReport(
            component="inference",
            status=worst_status(statuses),
            checks=checks,
            metrics={
                "request_count": request_count,
                "error_rate": error_rate,
                "avg_latency": avg_latency,
                "active_requests": active,
            },
            message="; ".join(messages) if messages else "Inference healthy",
        )


class HealthManager:
    """Aggregates the component monitors into one view."""

    def __init__(self, stats_provider: Optional[Callable[[], Dict[str, Any]]] = None,
                 max_active: int = 100, cpu_interval: Optional[float] = None):
        self.monitors: Dict[str, Any] = {"system": SystemHealthMonitor(cpu_interval=cpu_interval)}
        if stats_provider is not None:
            self.monitors["inference"] = InferenceHealthMonitor(stats_provider, max_active=max_active)

    def get_current_health(self) -> Dict[str, HealthReport]:
        return {name: monitor.get_health_report() for name, monitor in self.monitors.items()}

    def get_overall_status(self, reports: Optional[Dict[str, HealthReport]] = None) -> HealthStatus:
        reports = reports if reports is not None else self.get_current_health()
        return worst_status([report.status for report in reports.values()])

    def save_health_report(self, filepath: str):
        """Save health report to file."""
        report_data = {name: report.to_dict() for name, report in self.get_current_health().items()}
        with open(filepath, "w") as f:
            json.dump(report_data, f, indent=2)
        logger.info("Health report saved to %s", filepath)
