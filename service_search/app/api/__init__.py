"""API subpackage for the search service.

Routers expose endpoints for search, item ingestion/removal and index stats.
Transport layer remains thin and delegates to ``SearchManager``.
"""
