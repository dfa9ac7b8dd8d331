"""Document retrieval."""

from .service import SemanticRetriever, aggregate_hits

__all__ = ["SemanticRetriever", "aggregate_hits"]
