"""Observability for the Modbus master.

Provides metrics and structured logging:
- Prometheus metrics for round trips, device exceptions and connections
- JSON structured logging with device and transaction context
"""

from mbmaster.observability.logging import (
    LogContext,
    configure_logging,
    device_id_var,
    transaction_id_var,
)
from mbmaster.observability.metrics import (
    get_metrics,
    metrics_registry,
)

__all__ = [
    # Logging
    "configure_logging",
    "LogContext",
    "device_id_var",
    "transaction_id_var",
    # Metrics
    "metrics_registry",
    "get_metrics",
]
