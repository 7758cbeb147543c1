"""Monitoring and metrics module"""

from .metrics import MetricsCollector, get_metrics_collector
from .middleware import PrometheusMiddleware, setup_prometheus_middleware

__all__ = [
    "MetricsCollector",
    "PrometheusMiddleware",
    "get_metrics_collector",
    "setup_prometheus_middleware",
]
