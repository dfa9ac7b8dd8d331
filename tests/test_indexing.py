from __future__ import annotations

import json
import threading
from typing import List

import httpx
import pytest

from refsearch.chunking import TextChunker
from refsearch.embeddings import EmbeddingConfig, EmbeddingService
from refsearch.errors import ErrorKind, SemanticIndexError
from refsearch.indexing import IndexJobState, IndexOrchestrator, JobStatePersistence, JobStatus
from refsearch.models import DocumentText
from refsearch.sources import InMemoryDocumentSource
from refsearch.storage import SQLiteVectorStore


def _text(i: int) -> str:
    return f"Document {i} discusses topic number {i} with enough words to form a chunk. " * 3


def _source(count: int = 10) -> InMemoryDocumentSource:
    return InMemoryDocumentSource(
        {f"doc-{i}": DocumentText(_text(i), f"s{i}", f"a{i}") for i in range(count)}
    )


def _hash_embeddings(**config) -> EmbeddingService:
    return EmbeddingService(EmbeddingConfig(provider="hash", dimensions=16, **config))


def _orchestrator(source=None, embeddings=None, store=None, **kwargs) -> IndexOrchestrator:
    return IndexOrchestrator(
        source if source is not None else _source(),
        TextChunker(),
        embeddings if embeddings is not None else _hash_embeddings(),
        store if store is not None else SQLiteVectorStore(),
        **kwargs,
    )


def _embedded_texts(orchestrator: IndexOrchestrator) -> int:
    return orchestrator.get_stats()["usage"]["total_texts"]


def test_build_indexes_every_document():
    store = SQLiteVectorStore()
    orchestrator = _orchestrator(store=store)
    result = orchestrator.build_index()
    assert result.status is JobStatus.COMPLETED
    assert (result.processed, result.total, result.indexed) == (10, 10, 10)
    assert store.get_stats().total_documents == 10
    status = store.get_index_status("doc-3")
    assert status.chunk_count == len(store.get_document_vectors("doc-3"))
    assert status.source_modified_at == "s3"
    assert store.get_cached_content("doc-3").full_text == _text(3)
    assert orchestrator.get_index_progress().status is JobStatus.COMPLETED


def test_second_build_is_idempotent():
    store = SQLiteVectorStore()
    orchestrator = _orchestrator(store=store)
    orchestrator.build_index()
    embedded = _embedded_texts(orchestrator)
    vectors = store.get_stats().total_vectors

    again = orchestrator.build_index()
    assert again.status is JobStatus.COMPLETED
    assert again.total == 0
    assert _embedded_texts(orchestrator) == embedded
    assert store.get_stats().total_vectors == vectors


def test_timestamp_change_without_content_change_only_refreshes_status():
    source = _source(3)
    store = SQLiteVectorStore()
    orchestrator = _orchestrator(source=source, store=store)
    orchestrator.build_index()
    embedded = _embedded_texts(orchestrator)

    source.put("doc-1", DocumentText(_text(1), "s1-new", "a1"))
    result = orchestrator.build_index()
    assert (result.total, result.skipped, result.indexed) == (1, 1, 0)
    assert _embedded_texts(orchestrator) == embedded
    assert store.get_index_status("doc-1").source_modified_at == "s1-new"


def test_changed_content_is_reembedded():
    source = _source(3)
    store = SQLiteVectorStore()
    orchestrator = _orchestrator(source=source, store=store)
    orchestrator.build_index()

    source.put("doc-1", DocumentText("A completely different body of text for document one.", "s1b", "a1b"))
    result = orchestrator.build_index()
    assert result.indexed == 1
    chunks = store.get_document_chunks(["doc-1"])["doc-1"]
    assert [chunk.text for chunk in chunks] == ["A completely different body of text for document one."]
    assert store.get_cached_content("doc-1").full_text.startswith("A completely")


def test_rebuild_reembeds_everything():
    orchestrator = _orchestrator(source=_source(4))
    orchestrator.build_index()
    embedded = _embedded_texts(orchestrator)
    result = orchestrator.build_index(rebuild=True)
    assert result.indexed == 4
    assert _embedded_texts(orchestrator) == 2 * embedded


def test_empty_scope_is_a_no_op():
    store = SQLiteVectorStore()
    orchestrator = _orchestrator(source=_source(3), store=store)
    orchestrator.build_index()
    embedded = _embedded_texts(orchestrator)
    vectors = store.get_stats().total_vectors

    for rebuild in (False, True):
        result = orchestrator.build_index([], rebuild=rebuild)
        assert result.status is JobStatus.COMPLETED
        assert (result.processed, result.total, result.indexed) == (0, 0, 0)
    assert _embedded_texts(orchestrator) == embedded
    assert store.get_stats().total_vectors == vectors
    assert store.get_indexed_documents() == {"doc-0", "doc-1", "doc-2"}


class _ExplodingStore(SQLiteVectorStore):
    def commit_document(self, document_id, *args, **kwargs):
        if document_id == "doc-1":
            raise RuntimeError("disk gremlin")
        return super().commit_document(document_id, *args, **kwargs)


def test_unexpected_error_leaves_job_resumable():
    store = _ExplodingStore()
    orchestrator = _orchestrator(source=_source(3), store=store)
    errors: List[SemanticIndexError] = []
    orchestrator.set_on_index_error(errors.append)

    result = orchestrator.build_index()
    assert result.status is JobStatus.ERROR
    assert "RuntimeError: disk gremlin" in result.error
    assert errors and errors[0].kind is ErrorKind.UNKNOWN
    assert not orchestrator.is_running
    assert orchestrator.abort_index()
    assert orchestrator.get_index_progress().status is JobStatus.ABORTED


def test_empty_document_is_skipped():
    source = InMemoryDocumentSource({"empty": DocumentText("   ", "s", "a"), "full": DocumentText(_text(1), "s", "a")})
    store = SQLiteVectorStore()
    result = _orchestrator(source=source, store=store).build_index()
    assert (result.indexed, result.skipped) == (1, 1)
    assert store.get_index_status("empty").chunk_count == 0
    assert store.get_document_vectors("empty") == []


def test_observers_receive_monotonic_progress():
    orchestrator = _orchestrator(source=_source(5))
    states: List[IndexJobState] = []
    unsubscribe = orchestrator.subscribe(states.append)
    per_build: List[IndexJobState] = []
    orchestrator.build_index(on_progress=per_build.append)
    assert states[0].status is JobStatus.INDEXING
    assert states[-1].status is JobStatus.COMPLETED
    processed = [state.processed for state in states]
    assert processed == sorted(processed)
    assert processed[-1] == 5
    assert len(per_build) == len(states)

    unsubscribe()
    count = len(states)
    orchestrator.build_index(rebuild=True)
    assert len(states) == count


def test_concurrent_build_is_rejected():
    orchestrator = _orchestrator(source=_source(3))
    rejected = []

    def observer(state: IndexJobState) -> None:
        if state.processed == 1 and not rejected:
            rejected.append(orchestrator.build_index())
            rejected.append(orchestrator.start_build())

    result = orchestrator.build_index(on_progress=observer)
    assert result.status is JobStatus.COMPLETED
    assert rejected[0].accepted is False
    assert rejected[1] is False


def test_pause_then_resume_completes_without_reembedding():
    store = SQLiteVectorStore()
    orchestrator = _orchestrator(store=store)
    paused = threading.Event()
    requested = []

    def observer(state: IndexJobState) -> None:
        if state.status is JobStatus.INDEXING and state.processed == 4 and not requested:
            requested.append(orchestrator.pause_index())
        if state.status is JobStatus.PAUSED:
            paused.set()

    orchestrator.subscribe(observer)
    assert orchestrator.start_build()
    assert paused.wait(5)
    assert requested == [True]

    progress = orchestrator.get_index_progress()
    assert progress.status is JobStatus.PAUSED
    assert progress.processed == 4
    assert store.get_stats().total_documents == 4
    embedded_while_paused = _embedded_texts(orchestrator)

    assert orchestrator.resume_index()
    assert orchestrator.wait(5)
    final = orchestrator.get_index_progress()
    assert final.status is JobStatus.COMPLETED
    assert final.processed == 10
    assert store.get_stats().total_documents == 10

    chunk_total = sum(len(TextChunker().chunk(_text(i))) for i in range(10))
    assert _embedded_texts(orchestrator) == chunk_total
    assert embedded_while_paused < chunk_total


def test_pause_when_idle_is_ignored():
    orchestrator = _orchestrator()
    assert orchestrator.pause_index() is False
    assert orchestrator.resume_index() is False
    assert orchestrator.abort_index() is False


def test_abort_leaves_consistent_store(tmp_path):
    store = SQLiteVectorStore()
    state_path = tmp_path / "job.json"
    orchestrator = _orchestrator(store=store, state_path=state_path)

    def observer(state: IndexJobState) -> None:
        if state.processed == 3 and state.status is JobStatus.INDEXING:
            orchestrator.abort_index()

    result = orchestrator.build_index(on_progress=observer)
    assert result.status is JobStatus.ABORTED
    assert result.processed == 3
    assert store.get_indexed_documents() == {"doc-0", "doc-1", "doc-2"}
    for document_id in store.get_indexed_documents():
        assert store.get_index_status(document_id).chunk_count == len(store.get_document_vectors(document_id))
    assert not state_path.exists()

    rerun = orchestrator.build_index()
    assert rerun.status is JobStatus.COMPLETED
    assert rerun.total == 7


class _AbortAfterFirstBatch(EmbeddingService):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.orchestrator: IndexOrchestrator | None = None
        self.calls = 0

    def embed_batch(self, texts):
        vectors = super().embed_batch(texts)
        self.calls += 1
        if self.calls == 1 and self.orchestrator is not None:
            self.orchestrator.abort_index()
        return vectors


def test_abort_mid_document_abandons_partial_work():
    long_text = " ".join(f"Sentence {i} describes a separate idea about retrieval." for i in range(60))
    source = InMemoryDocumentSource({"long": DocumentText(long_text, "s", "a")})
    store = SQLiteVectorStore()
    embeddings = _AbortAfterFirstBatch(EmbeddingConfig(provider="hash", dimensions=16, max_batch_size=1))
    orchestrator = _orchestrator(source=source, embeddings=embeddings, store=store)
    embeddings.orchestrator = orchestrator

    result = orchestrator.build_index()
    assert result.status is JobStatus.ABORTED
    assert embeddings.calls == 1
    assert store.get_index_status("long") is None
    assert store.get_document_vectors("long") == []
    assert store.get_cached_content("long") is None


def _failing_embeddings(fail: List[bool], requests: List[str]) -> EmbeddingService:
    def handler(request: httpx.Request) -> httpx.Response:
        texts = json.loads(request.content)["input"]
        requests.extend(texts)
        if fail[0] and any("poison" in text for text in texts):
            return httpx.Response(401, json={"error": "invalid key"})
        return httpx.Response(
            200,
            json={"data": [{"index": i, "embedding": [1.0, float(len(t))]} for i, t in enumerate(texts)]},
        )

    return EmbeddingService(
        EmbeddingConfig(api_base="https://api.example.com/v1", model="text-embedding-3-small"),
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=lambda seconds: None,
    )


def _poisoned_source() -> InMemoryDocumentSource:
    source = _source(5)
    source.put("doc-2", DocumentText("This poison document breaks the embedding provider.", "s2", "a2"))
    return source


def test_embedding_error_stops_the_job(tmp_path):
    fail = [True]
    requests: List[str] = []
    store = SQLiteVectorStore()
    state_path = tmp_path / "job.json"
    orchestrator = _orchestrator(
        source=_poisoned_source(), embeddings=_failing_embeddings(fail, requests), store=store, state_path=state_path
    )
    errors: List[SemanticIndexError] = []
    orchestrator.set_on_index_error(errors.append)

    result = orchestrator.build_index()
    assert result.status is JobStatus.ERROR
    assert result.processed == 2
    progress = orchestrator.get_index_progress()
    assert progress.error_kind == ErrorKind.AUTH.value
    assert progress.error_retryable is False
    assert "API key" in progress.last_error
    assert errors and errors[0].kind is ErrorKind.AUTH
    assert store.get_indexed_documents() == {"doc-0", "doc-1"}
    assert json.loads(state_path.read_text())["status"] == "error"


def test_resume_after_error_finishes_remaining_documents(tmp_path):
    fail = [True]
    requests: List[str] = []
    store = SQLiteVectorStore()
    orchestrator = _orchestrator(
        source=_poisoned_source(),
        embeddings=_failing_embeddings(fail, requests),
        store=store,
        state_path=tmp_path / "job.json",
    )
    orchestrator.build_index()
    first_doc_chunks = [text for text in requests if text.startswith("Document 0")]

    fail[0] = False
    assert orchestrator.resume_index()
    assert orchestrator.wait(5)
    assert orchestrator.get_index_progress().status is JobStatus.COMPLETED
    assert store.get_stats().total_documents == 5
    assert [text for text in requests if text.startswith("Document 0")] == first_doc_chunks
    assert not (tmp_path / "job.json").exists()


def test_resume_keeps_rebuild_flag_for_unfinished_documents():
    fail = [False]
    requests: List[str] = []
    source = _source(3)
    store = SQLiteVectorStore()
    orchestrator = _orchestrator(source=source, embeddings=_failing_embeddings(fail, requests), store=store)
    orchestrator.build_index()

    source.put("doc-1", DocumentText("This poison document breaks the embedding provider.", "s1", "a1"))
    fail[0] = True
    requests.clear()
    result = orchestrator.build_index(["doc-0", "doc-1", "doc-2"], rebuild=True)
    assert result.status is JobStatus.ERROR
    assert result.processed == 1

    fail[0] = False
    requests.clear()
    assert orchestrator.resume_index()
    assert orchestrator.wait(5)
    progress = orchestrator.get_index_progress()
    assert progress.status is JobStatus.COMPLETED
    assert progress.total == 2
    assert any("poison" in text for text in requests)
    assert any(text.startswith("Document 2") for text in requests)
    assert not any(text.startswith("Document 0") for text in requests)


def test_extraction_failure_is_recorded_and_retryable():
    source = _source(4)
    source.fail_extraction("doc-2", "corrupt attachment")
    store = SQLiteVectorStore()
    orchestrator = _orchestrator(source=source, store=store)

    result = orchestrator.build_index()
    assert result.status is JobStatus.COMPLETED
    assert (result.processed, result.failed, result.indexed) == (4, 1, 3)
    failed = orchestrator.get_failed_items()
    assert [item.document_id for item in failed] == ["doc-2"]
    assert failed[0].error == "corrupt attachment"
    assert orchestrator.get_index_progress().failed_count == 1

    source.clear_failure("doc-2")
    retry = orchestrator.retry_failed_items()
    assert retry.indexed == 1
    assert orchestrator.get_failed_items() == []
    assert "doc-2" in store.get_indexed_documents()


def test_clear_failed_items():
    source = _source(2)
    source.fail_extraction("doc-0")
    orchestrator = _orchestrator(source=source)
    orchestrator.build_index()
    orchestrator.clear_failed_items()
    assert orchestrator.get_failed_items() == []
    assert orchestrator.retry_failed_items().accepted is False


def test_persisted_indexing_state_restores_as_paused(tmp_path):
    state_path = tmp_path / "job.json"
    JobStatePersistence(state_path).save(IndexJobState(status=JobStatus.INDEXING, processed=3, total=10))
    store = SQLiteVectorStore()
    orchestrator = _orchestrator(store=store, state_path=state_path)
    restored = orchestrator.get_index_progress()
    assert restored.status is JobStatus.PAUSED
    assert restored.processed == 3

    assert orchestrator.resume_index()
    assert orchestrator.wait(5)
    assert orchestrator.get_index_progress().status is JobStatus.COMPLETED
    assert store.get_stats().total_documents == 10
    assert not state_path.exists()


def test_abort_restored_paused_job(tmp_path):
    state_path = tmp_path / "job.json"
    JobStatePersistence(state_path).save(IndexJobState(status=JobStatus.PAUSED, processed=1, total=4))
    orchestrator = _orchestrator(state_path=state_path)
    assert orchestrator.abort_index()
    assert orchestrator.get_index_progress().status is JobStatus.ABORTED
    assert not state_path.exists()


def test_delete_document_index_keeps_cache_by_default():
    store = SQLiteVectorStore()
    orchestrator = _orchestrator(source=_source(2), store=store)
    orchestrator.build_index()
    orchestrator.delete_document_index("doc-0")
    assert store.get_document_vectors("doc-0") == []
    assert orchestrator.get_cached_content("doc-0") == _text(0)
    orchestrator.delete_document_index("doc-0", purge_cache=True)
    assert orchestrator.get_cached_content("doc-0") is None


def test_clear_index_and_clear_all():
    store = SQLiteVectorStore()
    orchestrator = _orchestrator(source=_source(2), store=store)
    orchestrator.build_index()
    orchestrator.clear_index()
    assert store.get_stats().total_vectors == 0
    assert orchestrator.get_cached_content("doc-1") == _text(1)
    orchestrator.clear_all()
    assert orchestrator.get_cached_content("doc-1") is None


def test_search_by_text_and_vector():
    store = SQLiteVectorStore()
    orchestrator = _orchestrator(source=_source(3), store=store)
    orchestrator.build_index()
    chunk = store.get_document_chunks(["doc-1"])["doc-1"][0]
    hits = orchestrator.search(chunk.text, top_k=1)
    assert hits[0].document_id == "doc-1"
    assert hits[0].score == pytest.approx(1.0, abs=1e-5)
    vector = store.get_document_vectors("doc-2")[0].vector
    assert orchestrator.search(query_vector=vector, top_k=1)[0].document_id == "doc-2"
    with pytest.raises(ValueError):
        orchestrator.search()


def test_find_similar_excludes_self():
    source = InMemoryDocumentSource(
        {
            "dup-a": DocumentText(_text(1), "s", "a"),
            "dup-b": DocumentText(_text(1), "s", "a"),
            "other": DocumentText(_text(2), "s", "a"),
        }
    )
    orchestrator = _orchestrator(source=source)
    orchestrator.build_index()
    matches = orchestrator.find_similar("dup-a")
    assert matches[0].document_id == "dup-b"
    assert all(match.document_id != "dup-a" for match in matches)
    assert orchestrator.find_similar("missing") == []


def test_stats_include_dimensions_and_job():
    orchestrator = _orchestrator(source=_source(2))
    orchestrator.build_index()
    stats = orchestrator.get_stats()
    assert stats["index"]["total_documents"] == 2
    assert stats["embedding"]["actual_dimensions"] == 16
    assert stats["embedding"]["store_width"] == 16
    assert stats["embedding"]["dimension_mismatch"] is False
    assert stats["job"]["status"] == "completed"
    assert stats["failed_items"] == 0
