"""Explicit construction of the refsearch service graph."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from refsearch.chunking import ChunkerConfig, TextChunker
from refsearch.config import Settings, get_settings
from refsearch.embeddings import EmbeddingService
from refsearch.indexing import DebouncedIndexScheduler, IndexOrchestrator
from refsearch.metrics.observability import configure_logging, get_logger
from refsearch.retrieval import SemanticRetriever
from refsearch.sources import DocumentSource, InMemoryDocumentSource
from refsearch.storage import SQLiteVectorStore


@dataclass(frozen=True)
class ServiceContainer:
    settings: Settings
    source: DocumentSource
    chunker: TextChunker
    embeddings: EmbeddingService
    store: SQLiteVectorStore
    retriever: SemanticRetriever
    orchestrator: IndexOrchestrator
    scheduler: DebouncedIndexScheduler | None = None

    def close(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown()
        self.embeddings.close()
        self.store.close()


def build_services(
    settings: Settings | None = None,
    *,
    source: DocumentSource | None = None,
    client: httpx.Client | None = None,
) -> ServiceContainer:
    """Wire every service leaves-first; nothing is created lazily behind the caller's back."""

    settings = settings or get_settings()
    configure_logging()
    logger = get_logger("runtime")

    chunker = TextChunker(
        ChunkerConfig(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            min_chunk_size=settings.min_chunk_size,
            language_hint=settings.language_hint,
        )
    )
    embeddings = EmbeddingService.from_settings(settings, client=client)
    # The store learns its width from the first vectors written, so providers
    # that ignore the dimensions request are not rejected.
    store = SQLiteVectorStore(
        settings.resolved_db_path,
        dimensions=None,
        quantize=settings.quantize_vectors,
        search_batch_size=settings.search_batch_size,
    )
    retriever = SemanticRetriever(store, embeddings)
    source = source if source is not None else InMemoryDocumentSource()
    orchestrator = IndexOrchestrator(
        source,
        chunker,
        embeddings,
        store,
        retriever=retriever,
        state_path=settings.resolved_job_state_path,
    )
    scheduler = None
    if settings.autoupdate_enabled:
        scheduler = DebouncedIndexScheduler(orchestrator, settings.autoupdate_debounce_seconds)

    logger.info(
        "runtime.ready",
        db_path=str(settings.resolved_db_path),
        provider=embeddings.provider_name,
        autoupdate=scheduler is not None,
    )
    return ServiceContainer(
        settings=settings,
        source=source,
        chunker=chunker,
        embeddings=embeddings,
        store=store,
        retriever=retriever,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


__all__ = ["ServiceContainer", "build_services"]
