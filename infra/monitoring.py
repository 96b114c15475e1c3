"""
Prometheus metrics for the bet lifecycle and cache layer.
"""

from prometheus_client import CollectorRegistry, Counter, generate_latest


class PrometheusMetrics:
    """Prometheus metrics collection for the betting service"""

    def __init__(self):
        self.registry = CollectorRegistry()

        # Business metrics
        self.bets_placed_total = Counter(
            'bets_placed_total',
            'Total bets recorded at placement',
            ['token', 'direction'],
            registry=self.registry
        )

        self.bets_settled_total = Counter(
            'bets_settled_total',
            'Total bets settled',
            ['token', 'outcome'],
            registry=self.registry
        )

        self.bets_cancelled_total = Counter(
            'bets_cancelled_total',
            'Total bets cancelled',
            ['token'],
            registry=self.registry
        )

        self.reconciliation_drift_total = Counter(
            'reconciliation_drift_total',
            'Accounts whose counters were rebuilt by reconciliation',
            registry=self.registry
        )

        # Cache metrics
        self.cache_requests_total = Counter(
            'cache_requests_total',
            'Read-through cache lookups',
            ['family', 'result'],
            registry=self.registry
        )

        self.cache_errors_total = Counter(
            'cache_errors_total',
            'Cache backend failures bypassed by the coordinator',
            ['operation'],
            registry=self.registry
        )

    def export(self) -> bytes:
        return generate_latest(self.registry)


prometheus_metrics = PrometheusMetrics()
