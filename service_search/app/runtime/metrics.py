"""Metrics collection facade for the search service.

Re-exports the shared collector so callers import from a consistent local
path within the service.
"""

from memoria.common.metrics import MetricsCollector

SERVICE_NAME = "search-service"


def create_metrics_collector() -> MetricsCollector:
    """New collector with its own registry for one app instance."""
    return MetricsCollector(SERVICE_NAME)
