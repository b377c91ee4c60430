"""Shared building blocks for the Memoria retrieval services.

Subpackages
- ``common``: configuration, logging, metrics, circuit breaker, jobs.
- ``items``: the captured ``Item`` model and item stores.
- ``vector_store``: owner-scoped vector index adapters.
- ``embeddings``: embedding provider clients.
"""
