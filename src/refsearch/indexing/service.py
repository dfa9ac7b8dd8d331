"""Index orchestrator: builds and maintains the semantic index as a controllable job."""

from __future__ import annotations

import hashlib
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, List, Sequence, Set, Tuple

from refsearch.chunking import TextChunker
from refsearch.embeddings import EmbeddingService
from refsearch.errors import DocumentExtractionError, ErrorKind, SemanticIndexError
from refsearch.indexing.state import (
    CancellationToken,
    FailedItem,
    IndexJobState,
    JobStateMachine,
    JobStatePersistence,
    JobStatus,
    PauseGate,
    StateObserver,
    restore_state,
)
from refsearch.metrics.observability import (
    PipelineMetrics,
    bind_correlation_id,
    clear_correlation_id,
    get_logger,
)
from refsearch.models import ContentCacheEntry, DocumentMatch, IndexStatus, SearchHit, VectorRecord
from refsearch.retrieval import SemanticRetriever
from refsearch.sources import DocumentSource
from refsearch.storage import SQLiteVectorStore

IndexErrorCallback = Callable[[SemanticIndexError], None]


@dataclass(frozen=True)
class BuildResult:
    status: JobStatus
    processed: int
    total: int
    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    error: str | None = None
    accepted: bool = True

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "processed": self.processed,
            "total": self.total,
            "indexed": self.indexed,
            "skipped": self.skipped,
            "failed": self.failed,
            "error": self.error,
            "accepted": self.accepted,
        }


class _Aborted(Exception):
    """Internal signal: cancellation observed inside a document."""


def content_hash(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


class IndexOrchestrator:
    """Coordinate chunker, embedding service and vector store for one index job at a time.

    Pause and abort are cooperative: they take effect between documents and
    between embedding batches of a large document. A document abandoned by an
    abort leaves no trace in the store because its vectors, status and cache
    entry are only written together at the end.
    """

    _logger = get_logger("indexing")

    def __init__(
        self,
        source: DocumentSource,
        chunker: TextChunker,
        embeddings: EmbeddingService,
        store: SQLiteVectorStore,
        *,
        retriever: SemanticRetriever | None = None,
        state_path: Path | None = None,
    ) -> None:
        self._source = source
        self._chunker = chunker
        self._embeddings = embeddings
        self._store = store
        self._retriever = retriever or SemanticRetriever(store, embeddings)
        self._persistence = JobStatePersistence(state_path)
        self._machine = JobStateMachine(restore_state(self._persistence.load()))
        self._run_lock = threading.Lock()
        self._control_lock = threading.Lock()
        self._cancel = CancellationToken()
        self._gate = PauseGate()
        self._worker: threading.Thread | None = None
        self._failed: Dict[str, FailedItem] = {}
        self._on_error: IndexErrorCallback | None = None
        self._last_request: Tuple[Tuple[str, ...] | None, bool] = (None, False)
        self._job_targets: List[str] | None = None
        self._job_done: Set[str] = set()
        self._durations: List[float] = []

    # -- observers -------------------------------------------------------

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        return self._machine.subscribe(observer)

    def set_on_index_error(self, callback: IndexErrorCallback | None) -> None:
        self._on_error = callback

    def get_index_progress(self) -> IndexJobState:
        return self._machine.state

    def get_failed_items(self) -> List[FailedItem]:
        with self._control_lock:
            return list(self._failed.values())

    def clear_failed_items(self) -> None:
        with self._control_lock:
            self._failed.clear()
        self._machine.update(failed_count=0)

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    # -- building --------------------------------------------------------

    def build_index(
        self,
        document_ids: Sequence[str] | None = None,
        *,
        rebuild: bool = False,
        on_progress: StateObserver | None = None,
    ) -> BuildResult:
        """Index ``document_ids`` (default: every document) on the calling thread."""

        if not self._run_lock.acquire(blocking=False):
            return self._rejected()
        try:
            self._prepare_run(document_ids, rebuild)
            return self._build(document_ids, rebuild, on_progress)
        finally:
            self._run_lock.release()

    def start_build(
        self,
        document_ids: Sequence[str] | None = None,
        *,
        rebuild: bool = False,
        on_progress: StateObserver | None = None,
    ) -> bool:
        """Run :meth:`build_index` on a background worker; ``False`` if a job is active."""

        if not self._run_lock.acquire(blocking=False):
            self._logger.info("index.build.rejected", reason="already running")
            return False
        self._prepare_run(document_ids, rebuild)

        def run() -> None:
            try:
                self._build(document_ids, rebuild, on_progress)
            except Exception:  # noqa: BLE001 - state already records the failure
                self._logger.exception("index.worker.failed")
            finally:
                self._run_lock.release()

        self._worker = threading.Thread(target=run, name="refsearch-indexer", daemon=True)
        self._worker.start()
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Join the background worker; ``True`` when no worker is left running."""

        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def retry_failed_items(self, on_progress: StateObserver | None = None) -> BuildResult:
        with self._control_lock:
            document_ids = list(self._failed)
        if not document_ids:
            state = self._machine.state
            return BuildResult(state.status, state.processed, state.total, accepted=False)
        self._logger.info("index.retry_failed", count=len(document_ids))
        return self.build_index(document_ids, rebuild=False, on_progress=on_progress)

    def _rejected(self) -> BuildResult:
        state = self._machine.state
        self._logger.info("index.build.rejected", reason="already running", status=state.status.value)
        return BuildResult(state.status, state.processed, state.total, accepted=False)

    def _prepare_run(self, document_ids: Sequence[str] | None, rebuild: bool) -> None:
        """Fresh control primitives for a run; called with the run lock held."""

        with self._control_lock:
            self._cancel = CancellationToken()
            self._gate = PauseGate()
            self._last_request = (tuple(document_ids) if document_ids is not None else None, rebuild)
            self._job_targets = None
            self._job_done = set()

    def _build(
        self,
        document_ids: Sequence[str] | None,
        rebuild: bool,
        on_progress: StateObserver | None,
    ) -> BuildResult:
        with self._control_lock:
            failed_count = len(self._failed)
        self._durations = []
        job_id = uuid.uuid4().hex
        bind_correlation_id(job_id)
        unsubscribe = self._machine.subscribe(on_progress) if on_progress else None
        indexed = skipped = failed = 0
        try:
            self._machine.update(
                status=JobStatus.INDEXING,
                processed=0,
                total=0,
                current_document=None,
                estimated_remaining_ms=None,
                last_error=None,
                error_kind=None,
                error_retryable=None,
                failed_count=failed_count,
                started_at=time.time(),
                job_id=job_id,
            )
            self._logger.info("index.build.started", rebuild=rebuild, scoped=document_ids is not None)
            try:
                targets = self._select_targets(document_ids, rebuild)
            except Exception as exc:  # noqa: BLE001 - surfaced through the job state
                error = exc if isinstance(exc, SemanticIndexError) else SemanticIndexError(str(exc))
                return self._fail(error, indexed, skipped, failed)
            with self._control_lock:
                self._job_targets = targets
            self._machine.update(total=len(targets))

            for document_id in targets:
                if not self._checkpoint():
                    return self._finish_aborted(indexed, skipped, failed)
                self._machine.update(current_document=document_id)
                started = time.perf_counter()
                try:
                    outcome = self._index_document(document_id, rebuild)
                except DocumentExtractionError as exc:
                    failed += 1
                    self._record_failure(document_id, exc)
                    outcome = "failed"
                except _Aborted:
                    return self._finish_aborted(indexed, skipped, failed)
                except SemanticIndexError as exc:
                    return self._fail(exc, indexed, skipped, failed)
                except sqlite3.Error as exc:
                    return self._fail(SemanticIndexError(f"Storage failure: {exc}"), indexed, skipped, failed)
                except Exception as exc:  # noqa: BLE001 - any other failure must still leave the job resumable
                    self._logger.exception("index.document.unexpected_error", document_id=document_id)
                    error = SemanticIndexError(f"{type(exc).__name__}: {exc}")
                    return self._fail(error, indexed, skipped, failed)
                duration = time.perf_counter() - started
                PipelineMetrics.observe_document(duration, outcome)
                if outcome == "indexed":
                    indexed += 1
                elif outcome == "skipped":
                    skipped += 1
                if outcome != "failed":
                    self._forget_failure(document_id)
                with self._control_lock:
                    self._job_done.add(document_id)
                self._durations.append(duration)
                self._advance()

            state = self._machine.update(
                status=JobStatus.COMPLETED,
                current_document=None,
                estimated_remaining_ms=0,
            )
            self._persistence.clear()
            self._logger.info(
                "index.build.finished",
                status=state.status.value,
                processed=state.processed,
                total=state.total,
                indexed=indexed,
                skipped=skipped,
                failed=failed,
            )
            return BuildResult(state.status, state.processed, state.total, indexed, skipped, failed)
        finally:
            if unsubscribe is not None:
                unsubscribe()
            clear_correlation_id()

    def _select_targets(self, document_ids: Sequence[str] | None, rebuild: bool) -> List[str]:
        if document_ids is not None:
            targets = list(dict.fromkeys(document_ids))
        else:
            targets = list(self._source.list_documents())
        if rebuild:
            if document_ids is None:
                self._store.clear_vectors()
                self._logger.info("index.rebuild.cleared")
            return targets
        return [document_id for document_id in targets if self._timestamps_changed(document_id)]

    def _timestamps_changed(self, document_id: str) -> bool:
        try:
            stamps = self._source.get_timestamps(document_id)
        except Exception as exc:  # noqa: BLE001 - fall back to the content check
            self._logger.warning("index.timestamps.unavailable", document_id=document_id, error=str(exc))
            return True
        return self._store.needs_reindex_by_timestamp(
            document_id, stamps.source_modified_at, stamps.attachment_modified_at
        )

    def _index_document(self, document_id: str, rebuild: bool) -> str:
        try:
            document = self._source.get_full_text(document_id)
        except DocumentExtractionError:
            raise
        except Exception as exc:  # noqa: BLE001 - any source failure is an extraction failure
            raise DocumentExtractionError(f"{type(exc).__name__}: {exc}", ErrorKind.UNKNOWN) from exc

        text = document.text
        digest = content_hash(text)
        now = int(time.time())
        status = IndexStatus(
            document_id=document_id,
            indexed_at=now,
            chunk_count=0,
            content_hash=digest,
            source_modified_at=document.source_modified_at,
            attachment_modified_at=document.attachment_modified_at,
        )

        if not rebuild:
            existing = self._store.get_index_status(document_id)
            if existing is not None and existing.content_hash == digest:
                refreshed = replace(
                    existing,
                    source_modified_at=document.source_modified_at,
                    attachment_modified_at=document.attachment_modified_at,
                )
                if refreshed != existing:
                    self._store.update_index_status(refreshed)
                if text.strip() and self._store.get_cached_content(document_id) is None:
                    self._store.set_cached_content(document_id, text, digest)
                self._logger.debug("index.document.skipped", document_id=document_id, reason="unchanged")
                return "skipped"

        if not text.strip():
            self._store.commit_document(document_id, [], status)
            self._logger.debug("index.document.skipped", document_id=document_id, reason="empty")
            return "skipped"

        chunks = self._chunker.chunk(text, document_id=document_id)
        vectors: List[Tuple[float, ...]] = []
        step = max(self._embeddings.config.max_batch_size, 1)
        for start in range(0, len(chunks), step):
            if start and not self._checkpoint():
                self._logger.info("index.document.abandoned", document_id=document_id, embedded=len(vectors))
                raise _Aborted()
            vectors.extend(self._embeddings.embed_batch([chunk.text for chunk in chunks[start : start + step]]))

        records = [
            VectorRecord(
                document_id=document_id,
                chunk_index=chunk.chunk_index,
                vector=vector,
                language=chunk.language,
                chunk_text=chunk.text,
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        self._store.commit_document(
            document_id,
            records,
            replace(status, chunk_count=len(records)),
            ContentCacheEntry(document_id, text, digest, now),
        )
        self._logger.info("index.document.committed", document_id=document_id, chunks=len(records))
        return "indexed"

    def _checkpoint(self) -> bool:
        """Honour pause and abort requests; ``False`` means the job must stop."""

        if self._cancel.cancelled:
            return False
        if self._gate.pause_requested:
            state = self._machine.update(status=JobStatus.PAUSED)
            self._persistence.save(state)
            self._logger.info("index.build.paused", processed=state.processed, total=state.total)
            self._gate.wait()
            if self._cancel.cancelled:
                return False
            self._machine.update(status=JobStatus.INDEXING)
            self._logger.info("index.build.resumed")
        return True

    def _advance(self) -> None:
        state = self._machine.state
        processed = state.processed + 1
        remaining = max(state.total - processed, 0)
        mean = sum(self._durations) / len(self._durations) if self._durations else 0.0
        self._machine.update(processed=processed, estimated_remaining_ms=int(mean * remaining * 1000))

    def _record_failure(self, document_id: str, exc: SemanticIndexError) -> None:
        item = FailedItem(document_id=document_id, error=str(exc), kind=exc.kind.value, timestamp=time.time())
        with self._control_lock:
            self._failed[document_id] = item
            count = len(self._failed)
        self._machine.update(failed_count=count)
        self._logger.warning("index.document.failed", document_id=document_id, error=str(exc))

    def _forget_failure(self, document_id: str) -> None:
        with self._control_lock:
            if self._failed.pop(document_id, None) is None:
                return
            count = len(self._failed)
        self._machine.update(failed_count=count)

    def _fail(self, error: SemanticIndexError, indexed: int, skipped: int, failed: int) -> BuildResult:
        state = self._machine.update(
            status=JobStatus.ERROR,
            current_document=None,
            last_error=error.user_message(),
            error_kind=error.kind.value,
            error_retryable=error.retryable,
        )
        self._persistence.save(state)
        self._logger.error(
            "index.build.error",
            kind=error.kind.value,
            retryable=error.retryable,
            error=str(error),
            processed=state.processed,
        )
        callback = self._on_error
        if callback is not None:
            try:
                callback(error)
            except Exception:  # noqa: BLE001 - callback failures must not mask the job error
                self._logger.exception("index.error_callback.failed")
        return BuildResult(state.status, state.processed, state.total, indexed, skipped, failed, str(error))

    def _finish_aborted(self, indexed: int, skipped: int, failed: int) -> BuildResult:
        state = self._machine.update(status=JobStatus.ABORTED, current_document=None, estimated_remaining_ms=None)
        self._persistence.clear()
        self._logger.info("index.build.aborted", processed=state.processed, total=state.total)
        return BuildResult(state.status, state.processed, state.total, indexed, skipped, failed)

    # -- control ---------------------------------------------------------

    def pause_index(self) -> bool:
        """Request a pause; ``True`` if the request was registered with a live job."""

        with self._control_lock:
            if not self.is_running or self._machine.state.status is not JobStatus.INDEXING:
                return False
            self._gate.request_pause()
        self._logger.info("index.pause.requested")
        return True

    def resume_index(self, on_progress: StateObserver | None = None) -> bool:
        """Release a paused loop, or restart a stopped job where it left off.

        A job that stopped in this process continues over the documents it
        had not finished, keeping its ``rebuild`` flag. A job restored from
        disk has no target list, so it restarts as an incremental build.
        """

        with self._control_lock:
            if self.is_running:
                self._gate.release()
                return True
            status = self._machine.state.status
            document_ids, rebuild = self._last_request
            targets = self._job_targets
            if targets is not None:
                document_ids = [target for target in targets if target not in self._job_done]
        if status not in (JobStatus.PAUSED, JobStatus.ERROR):
            return False
        self._logger.info(
            "index.resume.restart",
            previous=status.value,
            rebuild=rebuild,
            remaining=len(document_ids) if document_ids is not None else None,
        )
        return self.start_build(document_ids, rebuild=rebuild, on_progress=on_progress)

    def abort_index(self) -> bool:
        """Stop the job at the next checkpoint.

        Checkpoints sit between documents and between embedding batches, so a
        document still being embedded is abandoned rather than finished. Its
        vectors, status and cache entry are written together, so nothing of it
        reaches the store.
        """

        with self._control_lock:
            if self.is_running:
                self._cancel.cancel()
                self._gate.release()
                return True
            status = self._machine.state.status
            if status not in (JobStatus.PAUSED, JobStatus.ERROR):
                return False
        self._machine.update(status=JobStatus.ABORTED, current_document=None)
        self._persistence.clear()
        return True

    # -- queries and maintenance -------------------------------------------

    def search(
        self,
        query_text: str | None = None,
        *,
        query_vector: Sequence[float] | None = None,
        top_k: int = 10,
        language: str | None = None,
        document_ids: Sequence[str] | None = None,
        min_score: float | None = None,
    ) -> List[SearchHit]:
        if query_vector is None:
            if query_text is None:
                raise ValueError("either query_text or query_vector is required")
            query_vector = self._embeddings.embed_query(query_text)
        return self._store.search(
            query_vector,
            top_k=top_k,
            language=language,
            document_ids=document_ids,
            min_score=min_score,
        )

    def find_similar(self, document_id: str, *, top_k: int = 5, min_score: float | None = 0.3) -> List[DocumentMatch]:
        return self._retriever.find_similar(document_id, top_k=top_k, min_score=min_score)

    def delete_document_index(self, document_id: str, purge_cache: bool = False) -> None:
        self._store.delete_document_vectors(document_id, also_delete_cache=purge_cache)

    def clear_index(self) -> None:
        self._store.clear_vectors()

    def clear_all(self) -> None:
        self._store.clear_all()
        self.clear_failed_items()

    def get_cached_content(self, document_id: str) -> str | None:
        entry = self._store.get_cached_content(document_id)
        return entry.full_text if entry is not None else None

    def get_stats(self) -> dict:
        store_stats = self._store.get_stats()
        actual = self._embeddings.actual_dimensions
        width = store_stats.embedding_width
        return {
            "index": store_stats.to_dict(),
            "usage": self._embeddings.get_usage_stats().to_dict(),
            "embedding": {
                "provider": self._embeddings.provider_name,
                "configured_dimensions": self._embeddings.config.dimensions,
                "actual_dimensions": actual,
                "store_width": width,
                "dimension_mismatch": actual is not None and width is not None and actual != width,
            },
            "job": self._machine.state.to_dict(),
            "failed_items": len(self.get_failed_items()),
        }


__all__ = ["BuildResult", "IndexOrchestrator", "content_hash"]
