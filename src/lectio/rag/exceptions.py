"""Exceptions raised by the retrieval engine."""

from typing import Any, Optional


class LectioError(Exception):
    """Base error for the retrieval engine."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class EmbeddingGenerationError(LectioError):
    """Raised when the embedding model is unavailable or inference fails."""

    pass


class ModelNotAvailableError(EmbeddingGenerationError):
    """Raised when the embedding model cannot be loaded."""

    pass


class DimensionMismatchError(LectioError, ValueError):
    """Raised when two vectors of different lengths are compared."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Vectors must have the same dimensions (got {expected} and {actual})",
            {"expected": expected, "actual": actual},
        )


class InvalidInputError(LectioError, ValueError):
    """Raised for bad input that is rejected before any I/O."""

    pass


class VectorStoreError(LectioError):
    """Raised when the vector store's backing store fails."""

    pass


class RerankError(LectioError):
    """Raised when the reranking call fails or returns a malformed response."""

    pass


class RAGError(LectioError):
    """Raised when indexing or context retrieval fails."""

    pass
