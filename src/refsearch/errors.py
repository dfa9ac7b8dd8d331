"""Error taxonomy shared by the embedding, storage and indexing layers."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    INVALID_REQUEST = "invalid_request"
    SERVER = "server"
    CONFIG = "config"
    DIMENSION_MISMATCH = "dimension_mismatch"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.RATE_LIMIT, ErrorKind.SERVER})

_USER_MESSAGES = {
    ErrorKind.NETWORK: "Network connection failed, check connectivity and resume indexing.",
    ErrorKind.AUTH: "Authentication failed, check the embedding API key.",
    ErrorKind.INVALID_REQUEST: "The embedding API rejected the request, check the model and dimensions settings.",
    ErrorKind.SERVER: "The embedding API reported a server error, try again later.",
    ErrorKind.CONFIG: "The embedding API is not configured, set the API base and model first.",
    ErrorKind.DIMENSION_MISMATCH: "Embedding width changed, rebuild the index to continue.",
}


class SemanticIndexError(RuntimeError):
    """Base error carrying a classification that drives retry policy."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        *,
        status_code: int | None = None,
        retry_after_seconds: float | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds
        self.retryable = kind in RETRYABLE_KINDS if retryable is None else retryable

    @property
    def requires_configuration(self) -> bool:
        return self.kind in (ErrorKind.AUTH, ErrorKind.INVALID_REQUEST, ErrorKind.CONFIG)

    def user_message(self) -> str:
        if self.kind is ErrorKind.RATE_LIMIT:
            wait = int(self.retry_after_seconds or 60)
            return f"Rate limit exceeded, wait {wait}s and resume indexing."
        if self.kind in _USER_MESSAGES:
            return _USER_MESSAGES[self.kind]
        return f"Embedding call failed: {self}"


class EmbeddingAPIError(SemanticIndexError):
    """Raised for every failure of the embedding provider."""


class DimensionMismatchError(SemanticIndexError):
    """Raised when a vector's width disagrees with the established embedding width."""

    def __init__(self, expected: int, actual: int, *, context: str = "vector") -> None:
        super().__init__(
            f"{context} has {actual} dimensions, store expects {expected}",
            ErrorKind.DIMENSION_MISMATCH,
            retryable=False,
        )
        self.expected = expected
        self.actual = actual


class DocumentExtractionError(SemanticIndexError):
    """Raised by document sources when a document's text cannot be produced."""


__all__ = [
    "DimensionMismatchError",
    "DocumentExtractionError",
    "EmbeddingAPIError",
    "ErrorKind",
    "RETRYABLE_KINDS",
    "SemanticIndexError",
]
