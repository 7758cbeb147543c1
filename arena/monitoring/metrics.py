"""
Prometheus metrics for APEX ARENA.

Exposes metrics for monitoring:
- HTTP request latency and counts
- Decision outcomes and provider latency
- Validation rejections and trade outcomes
- Cycle / run outcomes and per-agent portfolio value
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)


class MetricsCollector:
    """
    Prometheus metrics collector.

    Metric names are prefixed with ``app_name`` and registered on the
    default registry, so use ``get_metrics_collector()`` rather than
    constructing a second instance.

    Usage:
        metrics = get_metrics_collector()
        metrics.track_trade("BUY", "FILLED")
    """

    def __init__(self, app_name: str = "arena"):
        self.app_name = app_name

        # ==================== HTTP Metrics ====================

        self.http_requests_total = Counter(
            f"{app_name}_http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status"],
        )

        self.http_request_duration_seconds = Histogram(
            f"{app_name}_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ==================== Decision Metrics ====================

        self.decisions_total = Counter(
            f"{app_name}_decisions_total",
            "Agent decisions by final outcome",
            ["provider", "action", "outcome"],  # outcome: parsed/fallback
        )

        self.decision_latency_seconds = Histogram(
            f"{app_name}_decision_latency_seconds",
            "Decision provider call latency",
            ["provider"],
            buckets=(0.05, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
        )

        self.validation_rejections_total = Counter(
            f"{app_name}_validation_rejections_total",
            "Decisions rejected by constraint validation",
            ["rule"],
        )

        # ==================== Trading Metrics ====================

        self.trades_total = Counter(
            f"{app_name}_trades_total",
            "Trades by side and terminal status",
            ["side", "status"],
        )

        self.agent_total_value = Gauge(
            f"{app_name}_agent_total_value",
            "Latest total portfolio value per agent",
            ["agent"],
        )

        # ==================== Orchestration Metrics ====================

        self.cycles_total = Counter(
            f"{app_name}_cycles_total",
            "Trading cycles",
            ["status"],  # status: success/skipped/error
        )

        self.runs_total = Counter(
            f"{app_name}_runs_total",
            "Runs by terminal status",
            ["status"],
        )

        self.websocket_connections = Gauge(
            f"{app_name}_websocket_connections",
            "Active WebSocket connections",
        )

        # App info
        self.app_info = Info(
            f"{app_name}_app_info",
            "Application information",
        )

    def set_app_info(self, version: str, environment: str) -> None:
        """Set application info"""
        self.app_info.info(
            {
                "version": version,
                "environment": environment,
            }
        )

    # ==================== HTTP Tracking ====================

    def track_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float,
    ) -> None:
        """Track HTTP request"""
        self.http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()

        self.http_request_duration_seconds.labels(
            method=method,
            endpoint=endpoint,
        ).observe(duration)

    # ==================== Decision Tracking ====================

    def track_decision(self, provider: str, action: str, outcome: str) -> None:
        self.decisions_total.labels(provider=provider, action=action, outcome=outcome).inc()

    def observe_decision_latency(self, provider: str, latency_seconds: float) -> None:
        self.decision_latency_seconds.labels(provider=provider).observe(latency_seconds)

    def track_rejection(self, rule: str) -> None:
        self.validation_rejections_total.labels(rule=rule or "unknown").inc()

    # ==================== Trade Tracking ====================

    def track_trade(self, side: str, status: str) -> None:
        self.trades_total.labels(side=side, status=status).inc()

    def set_agent_value(self, agent: str, total_value: float) -> None:
        self.agent_total_value.labels(agent=agent).set(total_value)

    # ==================== Orchestration Tracking ====================

    def track_cycle(self, status: str) -> None:
        self.cycles_total.labels(status=status).inc()

    def track_run(self, status: str) -> None:
        self.runs_total.labels(status=status).inc()

    def set_websocket_connections(self, count: int) -> None:
        """Set WebSocket connection count"""
        self.websocket_connections.set(count)

    def generate_metrics(self) -> bytes:
        """Generate Prometheus metrics output"""
        return generate_latest()

    @property
    def content_type(self) -> str:
        """Prometheus content type"""
        return CONTENT_TYPE_LATEST


# Global metrics collector
_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get or create metrics collector singleton"""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
