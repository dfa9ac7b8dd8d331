"""Shared domain models used across the refsearch pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Mapping, Sequence, Tuple

Language = Literal["zh", "en"]


@dataclass(frozen=True)
class Chunk:
    """Bounded, language-tagged segment of a document's text."""

    document_id: str
    chunk_index: int
    text: str
    language: Language = "en"


@dataclass(frozen=True)
class VectorRecord:
    """Embedding of a single chunk as persisted by the vector store."""

    document_id: str
    chunk_index: int
    vector: Tuple[float, ...]
    language: Language
    chunk_text: str = ""
    dimensions: int = 0

    def __post_init__(self) -> None:
        if not self.dimensions:
            object.__setattr__(self, "dimensions", len(self.vector))


@dataclass(frozen=True)
class SearchHit:
    """Chunk returned from a similarity search."""

    document_id: str
    chunk_index: int
    score: float
    chunk_text: str
    language: str


@dataclass(frozen=True)
class IndexStatus:
    """Per-document record deciding whether a reindex is required."""

    document_id: str
    indexed_at: int
    chunk_count: int
    content_hash: str
    version: int = 1
    source_modified_at: str | None = None
    attachment_modified_at: str | None = None


@dataclass(frozen=True)
class ContentCacheEntry:
    """Durable copy of a document's extracted full text."""

    document_id: str
    full_text: str
    content_hash: str
    cached_at: int


@dataclass(frozen=True)
class CachedContentInfo:
    document_id: str
    content_length: int
    content_hash: str
    cached_at: int


@dataclass(frozen=True)
class CacheSearchHit:
    """Substring match inside the content cache."""

    document_id: str
    snippet: str
    match_count: int


@dataclass(frozen=True)
class StoreStats:
    total_vectors: int
    total_documents: int
    language_counts: Mapping[str, int]
    cached_items: int
    cached_bytes: int
    quantized_fraction: float
    embedding_width: int | None

    def to_dict(self) -> dict:
        return {
            "total_vectors": self.total_vectors,
            "total_documents": self.total_documents,
            "language_counts": dict(self.language_counts),
            "cached_items": self.cached_items,
            "cached_bytes": self.cached_bytes,
            "quantized_fraction": self.quantized_fraction,
            "embedding_width": self.embedding_width,
        }


@dataclass(frozen=True)
class DocumentTimestamps:
    source_modified_at: str | None = None
    attachment_modified_at: str | None = None


@dataclass(frozen=True)
class DocumentText:
    """Full text of a document as supplied by the host library."""

    text: str
    source_modified_at: str | None = None
    attachment_modified_at: str | None = None

    @property
    def timestamps(self) -> DocumentTimestamps:
        return DocumentTimestamps(self.source_modified_at, self.attachment_modified_at)


@dataclass(frozen=True)
class MatchedChunk:
    chunk_index: int
    text: str
    score: float


@dataclass(frozen=True)
class DocumentMatch:
    """Document-level search result aggregated from its best chunks."""

    document_id: str
    score: float
    matched_chunks: Sequence[MatchedChunk] = field(default_factory=tuple)
