from prometheus_client import Counter, Histogram, Gauge
import time
import structlog
from typing import Optional

logger = structlog.get_logger(__name__)

# --- Prometheus Metric Definitions ---
# Defined globally so they are registered with the default REGISTRY once per process.

# 1. Billing request metrics
BILLING_REQUESTS_TOTAL = Counter(
    'billing_requests_total',
    'Billing connections handled, labeled by how the exchange ended.',
    ['outcome']  # e.g., 'success', 'malformed_request', 'patient_not_found', 'persist_failure', 'peer_disconnected'
)

BILLING_CONNECTION_DURATION_SECONDS = Histogram(
    'billing_connection_duration_seconds',
    'Time from accepting a connection to closing it, in seconds.',
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float('inf'))
)

BILLING_ACTIVE_CONNECTIONS = Gauge(
    'billing_active_connections',
    'Connections currently being handled.'
)

BILLED_AMOUNT_OMR = Histogram(
    'billed_amount_omr',
    'Distribution of final bill amounts returned to clients, in OMR.',
    buckets=(0.0, 1.0, 5.0, 10.0, 25.0, 50.0, 100.0, 200.0, float('inf'))
)

# 2. Database Metrics
DATABASE_QUERY_DURATION_SECONDS = Histogram(
    'database_query_duration_seconds',
    'Duration of key database queries, in seconds.',
    ['query_name']  # e.g., 'lookup_coverage_plan', 'append_bill_record'
)

logger.info("Billing service Prometheus metrics defined in app_metrics.py.")


class MetricsCollector:
    """
    Collects and exposes application metrics using Prometheus client.
    """

    def __init__(self):
        logger.info("MetricsCollector initialized (stateless, uses global metrics).")

    def record_request_outcome(self, outcome: str, final_amount: Optional[float] = None):
        """Counts one finished exchange; successful ones also feed the billed amount histogram."""
        BILLING_REQUESTS_TOTAL.labels(outcome=outcome).inc()
        if final_amount is not None:
            BILLED_AMOUNT_OMR.observe(final_amount)

    def record_connection_duration(self, duration_seconds: float):
        BILLING_CONNECTION_DURATION_SECONDS.observe(duration_seconds)

    def connection_opened(self):
        BILLING_ACTIVE_CONNECTIONS.inc()

    def connection_closed(self):
        BILLING_ACTIVE_CONNECTIONS.dec()

    def record_database_query_duration(self, query_name: str, duration_seconds: float):
        DATABASE_QUERY_DURATION_SECONDS.labels(query_name=query_name).observe(duration_seconds)

    # Timer class for timing database queries
    class _DatabaseTimer:
        def __init__(self, collector_instance: 'MetricsCollector', query_name: str):
            self.collector = collector_instance
            self.query_name = query_name
            self.start_time: Optional[float] = None

        def __enter__(self):
            self.start_time = time.perf_counter()
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            if self.start_time is not None:
                duration_seconds = time.perf_counter() - self.start_time
                self.collector.record_database_query_duration(self.query_name, duration_seconds)

    def time_db_query(self, query_name: str) -> _DatabaseTimer:
        """Returns a Timer context manager for a database query."""
        return self._DatabaseTimer(self, query_name)
