"""Memoria search service."""
