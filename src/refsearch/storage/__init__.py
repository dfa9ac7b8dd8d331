"""Vector storage."""

from .service import SQLiteVectorStore

__all__ = ["SQLiteVectorStore"]
