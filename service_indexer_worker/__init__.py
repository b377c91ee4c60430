"""Memoria indexer worker."""
