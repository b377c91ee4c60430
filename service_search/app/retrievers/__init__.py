"""Search retrievers.

Retrievers fetch and score candidates from a backend before fusion.
Vector retrieval lives in the orchestrator since it spans the embedding
provider, the vector index and the item store.
"""
