"""Hybrid search orchestration.

Includes the ``SearchManager`` which runs the lexical and vector legs,
applies the degradation policy and fuses their results.
"""
