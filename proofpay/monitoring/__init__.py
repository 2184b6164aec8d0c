"""Monitoring package: structured logging, Prometheus metrics and health checks."""
from .logging import get_logger, setup_logging
from .metrics import MetricsCollector, metrics

__all__ = ["MetricsCollector", "get_logger", "metrics", "setup_logging"]
