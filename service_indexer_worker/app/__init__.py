"""Indexer worker service package.

Contains the Celery task definitions and the embedding worker used for
background vector index maintenance (per-item embedding, owner reindex).
"""
