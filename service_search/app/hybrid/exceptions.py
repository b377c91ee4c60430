"""Search failure taxonomy.

``InvalidQueryError`` is a caller mistake. Everything else means a leg the
caller depended on could not produce an answer, which is never the same as
an empty result.
"""


class SearchError(Exception):
    """Base exception for search operations."""
    status_code = 500


class InvalidQueryError(SearchError):
    """Malformed input (e.g. no text and no filters)."""
    status_code = 400


class VectorSearchError(SearchError):
    """Embedding or vector index failed in semantic mode."""
    status_code = 503


class VectorSearchTimeoutError(VectorSearchError):
    """The vector leg exceeded its time budget in semantic mode."""
    status_code = 504


class LexicalSearchError(SearchError):
    """The lexical leg failed; no mode can fall back from this."""
    status_code = 503


class RetrievalUnavailableError(SearchError):
    """Hybrid search where neither leg succeeded."""
    status_code = 503
