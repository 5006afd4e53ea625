"""Prometheus metrics for the Modbus master.

Provides metrics collection and exposure:
- Round-trip metrics (count by function and outcome, latency)
- Foreign frames discarded on shared transports
- Device exception responses by code
- Open transport connections

Usage:
    from mbmaster.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.requests_total.labels(function="READ_COILS", outcome="ok").inc()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest

from mbmaster.config import settings
from mbmaster.protocol.constants import FunctionCode

logger = logging.getLogger(__name__)


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    requests_total: Any = None
    request_duration_seconds: Any = None
    foreign_frames_total: Any = None
    device_exceptions_total: Any = None
    connections_open: Any = None

    # Internal state
    _initialized: bool = field(default=False, repr=False)
    _registry: Any = field(default=None, repr=False)

    def initialize(self) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        if not settings.enable_metrics:
            logger.info("Metrics are disabled")
            self._initialized = True
            return

        self._registry = REGISTRY

        self.requests_total = Counter(
            "mbmaster_requests_total",
            "Total Modbus round trips",
            ["function", "outcome"],
        )

        self.request_duration_seconds = Histogram(
            "mbmaster_request_duration_seconds",
            "Modbus round-trip latency in seconds",
            ["function"],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
        )

        self.foreign_frames_total = Counter(
            "mbmaster_foreign_frames_total",
            "Frames discarded because no pending transaction owned their id",
        )

        self.device_exceptions_total = Counter(
            "mbmaster_device_exceptions_total",
            "Modbus exception responses",
            ["function", "code"],
        )

        self.connections_open = Gauge(
            "mbmaster_connections_open",
            "Open transport connections",
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if self._registry is None:
            return b"# Metrics disabled\n"
        return generate_latest(self._registry)


# Global metrics registry
metrics_registry = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry


def _function_label(function_code: int) -> str:
    try:
        return FunctionCode(function_code).name
    except ValueError:
        return f"0x{function_code:02X}"


def record_request(function_code: int, outcome: str, duration: float) -> None:
    """Record a finished round trip.

    Args:
        function_code: Function code of the request
        outcome: "ok" or the error kind that ended the round trip
        duration: Round-trip duration in seconds
    """
    metrics = get_metrics()
    function = _function_label(function_code)
    if metrics.requests_total:
        metrics.requests_total.labels(function=function, outcome=outcome).inc()
    if metrics.request_duration_seconds:
        metrics.request_duration_seconds.labels(function=function).observe(duration)


def record_foreign_frame() -> None:
    """Record a frame discarded for carrying an unknown transaction id."""
    metrics = get_metrics()
    if metrics.foreign_frames_total:
        metrics.foreign_frames_total.inc()


def record_device_exception(function_code: int, exception_code: int) -> None:
    metrics = get_metrics()
    if metrics.device_exceptions_total:
        metrics.device_exceptions_total.labels(
            function=_function_label(function_code),
            code=f"0x{exception_code:02X}",
        ).inc()


def set_connections_open(count: int) -> None:
    metrics = get_metrics()
    if metrics.connections_open:
        metrics.connections_open.set(count)
