"""Integration test suite for end-to-end flows.

Covers cross-service interactions (serving, embeddings, search), verifying
that components work together as expected with test fixtures and test data.
"""
