"""Document-level semantic retrieval built on chunk search."""

from __future__ import annotations

from typing import Dict, List, Sequence

from refsearch.chunking import detect_language
from refsearch.embeddings import EmbeddingService
from refsearch.metrics.observability import get_logger
from refsearch.models import DocumentMatch, MatchedChunk, SearchHit
from refsearch.storage import SQLiteVectorStore

MAX_CHUNKS_PER_DOCUMENT = 3
CANDIDATE_MULTIPLIER = 3


def aggregate_hits(hits: Sequence[SearchHit], top_k: int) -> List[DocumentMatch]:
    """Group chunk hits per document, scoring each by its best chunk."""

    grouped: Dict[str, List[SearchHit]] = {}
    for hit in hits:
        grouped.setdefault(hit.document_id, []).append(hit)

    matches = []
    for document_id, document_hits in grouped.items():
        ordered = sorted(document_hits, key=lambda hit: hit.score, reverse=True)
        matches.append(
            DocumentMatch(
                document_id=document_id,
                score=ordered[0].score,
                matched_chunks=tuple(
                    MatchedChunk(chunk_index=hit.chunk_index, text=hit.chunk_text, score=hit.score)
                    for hit in ordered[:MAX_CHUNKS_PER_DOCUMENT]
                ),
            )
        )
    matches.sort(key=lambda match: match.score, reverse=True)
    return matches[:top_k]


class SemanticRetriever:
    """Answer natural-language queries with ranked documents."""

    _logger = get_logger("retrieval")

    def __init__(self, store: SQLiteVectorStore, embeddings: EmbeddingService) -> None:
        self._store = store
        self._embeddings = embeddings

    def search(
        self,
        query: str,
        *,
        top_k: int = 10,
        language: str | None = None,
        document_ids: Sequence[str] | None = None,
        min_score: float | None = 0.1,
    ) -> List[DocumentMatch]:
        """Rank documents for ``query``.

        ``language`` may be ``None`` or ``"all"`` (no filter), ``"auto"`` (the
        query's detected language) or an explicit ``"zh"``/``"en"``.
        """

        if not query.strip() or top_k <= 0:
            return []
        if language == "auto":
            language = detect_language(query)
        vector = self._embeddings.embed_query(query)
        hits = self._store.search(
            vector,
            top_k=top_k * CANDIDATE_MULTIPLIER,
            language=language,
            document_ids=document_ids,
            min_score=min_score,
        )
        matches = aggregate_hits(hits, top_k)
        self._logger.info("retrieval.search", hits=len(hits), documents=len(matches), language=language or "all")
        return matches

    def find_similar(
        self,
        document_id: str,
        *,
        top_k: int = 5,
        min_score: float | None = 0.3,
    ) -> List[DocumentMatch]:
        """Documents closest to ``document_id``'s first chunk, excluding itself."""

        records = self._store.get_document_vectors(document_id)
        if not records or top_k <= 0:
            return []
        hits = self._store.search(
            records[0].vector,
            top_k=(top_k + 1) * CANDIDATE_MULTIPLIER,
            min_score=min_score,
        )
        others = [hit for hit in hits if hit.document_id != document_id]
        return aggregate_hits(others, top_k)


__all__ = ["CANDIDATE_MULTIPLIER", "MAX_CHUNKS_PER_DOCUMENT", "SemanticRetriever", "aggregate_hits"]
