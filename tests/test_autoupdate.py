from __future__ import annotations

import threading

from refsearch.chunking import TextChunker
from refsearch.embeddings import EmbeddingConfig, EmbeddingService
from refsearch.indexing import DebouncedIndexScheduler, IndexOrchestrator, JobStatus
from refsearch.models import DocumentText
from refsearch.sources import InMemoryDocumentSource
from refsearch.storage import SQLiteVectorStore

TEXT = "A note about vector databases and how they support semantic search."


def _setup():
    source = InMemoryDocumentSource()
    store = SQLiteVectorStore()
    orchestrator = IndexOrchestrator(
        source,
        TextChunker(),
        EmbeddingService(EmbeddingConfig(provider="hash", dimensions=16)),
        store,
    )
    return source, store, orchestrator


def test_added_documents_are_batched_into_one_build():
    source, store, orchestrator = _setup()
    # long debounce: the test flushes explicitly
    scheduler = DebouncedIndexScheduler(orchestrator, debounce_seconds=60)
    for name in ("one", "two"):
        source.put(name, DocumentText(TEXT + name, "s", "a"))
        scheduler.on_document_added(name)
    assert scheduler.pending == ["one", "two"]

    assert scheduler.flush()
    assert orchestrator.wait(5)
    assert scheduler.pending == []
    assert store.get_indexed_documents() == {"one", "two"}
    assert orchestrator.get_index_progress().total == 2
    scheduler.shutdown()


def test_timer_fires_after_debounce():
    source, store, orchestrator = _setup()
    scheduler = DebouncedIndexScheduler(orchestrator, debounce_seconds=0.01)
    finished = threading.Event()

    def observer(state):
        if state.status is JobStatus.COMPLETED:
            finished.set()

    orchestrator.subscribe(observer)
    source.put("doc", DocumentText(TEXT, "s", "a"))
    scheduler.on_document_added("doc")
    assert finished.wait(5)
    assert orchestrator.wait(5)
    assert "doc" in store.get_indexed_documents()
    scheduler.shutdown()


def test_flush_defers_while_build_running():
    source, store, orchestrator = _setup()
    scheduler = DebouncedIndexScheduler(orchestrator, debounce_seconds=60)
    source.put("late", DocumentText(TEXT, "s", "a"))
    outcome = []

    def observer(state):
        if state.status is JobStatus.INDEXING and not outcome:
            scheduler.on_document_added("late")
            outcome.append(scheduler.flush())

    source.put("first", DocumentText(TEXT + " first", "s", "a"))
    orchestrator.build_index(["first"], on_progress=observer)
    assert outcome == [False]
    assert scheduler.pending == ["late"]
    scheduler.shutdown()


def test_deleted_document_is_removed_immediately():
    source, store, orchestrator = _setup()
    source.put("doc", DocumentText(TEXT, "s", "a"))
    orchestrator.build_index()
    scheduler = DebouncedIndexScheduler(orchestrator, debounce_seconds=60)
    scheduler.on_document_added("doc")
    scheduler.on_document_deleted("doc")
    assert scheduler.pending == []
    assert store.get_indexed_documents() == set()
    assert store.get_cached_content("doc") is None
    scheduler.shutdown()


def test_shutdown_ignores_later_notifications():
    _, _, orchestrator = _setup()
    scheduler = DebouncedIndexScheduler(orchestrator, debounce_seconds=60)
    scheduler.shutdown()
    scheduler.on_document_added("doc")
    assert scheduler.pending == []
