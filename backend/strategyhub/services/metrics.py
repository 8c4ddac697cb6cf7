"""Prometheus metrics for the worker, risk events and order flow."""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

RISK_AUTO_CLOSE = "auto_close"
RISK_KILL_SWITCH = "kill_switch"


class StrategyHubMetrics:
    """Metric set bound to one registry.

    The application uses the module-level `metrics`; tests build their own
    instance so counts start from zero.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Worker ===
        self.worker_tick_duration = Histogram(
            'strategyhub_worker_tick_duration_seconds',
            'Duration of worker tick in seconds',
            buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
            registry=reg
        )
        self.worker_bots_processed = Gauge(
            'strategyhub_worker_bots_processed',
            'Number of bots processed in last tick',
            registry=reg
        )
        self.worker_errors = Counter(
            'strategyhub_worker_errors_total',
            'Total number of worker errors',
            registry=reg
        )
        self.active_bots = Gauge(
            'strategyhub_active_bots_total',
            'Number of currently active bots',
            registry=reg
        )
        self.reconcile_failures = Counter(
            'strategyhub_reconcile_fail_total',
            'Total number of reconcile failures',
            labelnames=['exchange', 'symbol'],
            registry=reg
        )

        # === Risk ===
        self.risk_triggered = Counter(
            'strategyhub_risk_triggered_total',
            'Total number of risk events triggered',
            labelnames=['type'],
            registry=reg
        )

        # === Orders ===
        self.orders_placed = Counter(
            'strategyhub_orders_placed_total',
            'Total number of orders placed',
            labelnames=['exchange', 'symbol', 'side', 'type'],
            registry=reg
        )
        self.orders_duplicate = Counter(
            'strategyhub_orders_duplicate_total',
            'Total number of duplicate clientOrderId detections',
            labelnames=['exchange'],
            registry=reg
        )

        self.registry = reg

    def record_tick(self, duration_seconds: float, processed: int, errors: int, active_bots: int) -> None:
        self.worker_tick_duration.observe(duration_seconds)
        self.worker_bots_processed.set(processed)
        self.active_bots.set(active_bots)
        if errors > 0:
            self.worker_errors.inc(errors)

    def record_risk_triggered(self, risk_type: str, count: int = 1) -> None:
        if count > 0:
            self.risk_triggered.labels(type=risk_type).inc(count)

    def sample(self, name: str, labels: Optional[dict] = None) -> float:
        """Current value of a sample, 0 when it has not been recorded yet."""
        return self.registry.get_sample_value(name, labels or {}) or 0.0

    def render(self) -> bytes:
        """Prometheus text exposition of every metric in the registry."""
        return generate_latest(self.registry)


metrics = StrategyHubMetrics()
