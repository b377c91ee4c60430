"""Metrics collection for Memoria services.

Provides a thin convenience wrapper around ``prometheus_client`` so services
record HTTP, search, embedding-job and vector-index metrics with consistent
label sets.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- Each collector owns its registry; the composition root creates one
  collector per process and hands it to the components that record
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest


class MetricsCollector:
    """Centralized metrics collection for Memoria services.

    Parameters
    - service_name: Logical name of the process recording metrics
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.request_count = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration',
            ['method', 'endpoint'],
            registry=self.registry
        )

        self.search_requests = Counter(
            'memoria_search_requests_total',
            'Total search requests',
            ['mode', 'outcome'],
            registry=self.registry
        )

        self.search_duration = Histogram(
            'memoria_search_duration_seconds',
            'Search duration',
            ['mode'],
            registry=self.registry
        )

        self.leg_failures = Counter(
            'memoria_search_leg_failures_total',
            'Retrieval leg failures',
            ['leg', 'stage'],
            registry=self.registry
        )

        self.embedding_jobs = Counter(
            'memoria_embedding_jobs_total',
            'Background embedding job outcomes',
            ['status'],
            registry=self.registry
        )

        self.vector_index_operations = Counter(
            'memoria_vector_index_operations_total',
            'Vector index operations issued',
            ['operation'],
            registry=self.registry
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float
    ) -> None:
        """Record HTTP request metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_search(self, mode: str, outcome: str, duration: float) -> None:
        """Record one search call; outcome is ``ok``, ``degraded`` or ``error``."""
        self.search_requests.labels(mode=mode, outcome=outcome).inc()
        self.search_duration.labels(mode=mode).observe(duration)

    def record_leg_failure(self, leg: str, stage: str) -> None:
        """Record a failed retrieval leg (``lexical``/``vector``)."""
        self.leg_failures.labels(leg=leg, stage=stage).inc()

    def record_embedding_job(self, status: str, count: int = 1) -> None:
        """Record background embedding outcomes (``stored``/``skipped``/``failed``)."""
        self.embedding_jobs.labels(status=status).inc(count)

    def record_vector_index_operation(self, operation: str) -> None:
        """Record a vector index operation (``upsert``/``remove``/``query``)."""
        self.vector_index_operations.labels(operation=operation).inc()

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')
