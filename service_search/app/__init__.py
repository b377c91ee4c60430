"""Search service package.

Layout:
- ``api``: HTTP endpoints for search, item ingestion and index maintenance.
- ``intelligence``: query normalization (type, date and hashtag filters).
- ``retrievers``: lexical matching over the item store.
- ``ranking``: weighted score fusion.
- ``hybrid``: search orchestration and failure policy.
- ``runtime``: service-local metrics helpers.
"""
