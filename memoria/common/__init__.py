"""Common utilities shared across services.

Includes:
- ``config``: Pydantic-based service configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics collector.
- ``circuit_breaker``: async circuit breaker for outbound calls.
- ``jobs``: embedding job model and dispatchers.

Import pattern:
- from memoria.common.config import SearchConfig
- from memoria.common.logging import configure_logging
"""
