"""SQLite-backed vector store with index status and a permanent content cache."""

from __future__ import annotations

import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Sequence, Set

import numpy as np

from refsearch.errors import DimensionMismatchError
from refsearch.metrics.observability import PipelineMetrics, TimedSection, get_logger
from refsearch.models import (
    CachedContentInfo,
    CacheSearchHit,
    Chunk,
    ContentCacheEntry,
    IndexStatus,
    SearchHit,
    StoreStats,
    VectorRecord,
)
from refsearch.vectors import as_array, decode_vector, encode_int8, encode_vector, quantize

SNIPPET_RADIUS = 100

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS embeddings (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  document_id TEXT NOT NULL,
  chunk_index INTEGER NOT NULL,
  vector BLOB NOT NULL,
  language TEXT NOT NULL CHECK(language IN ('zh', 'en')),
  chunk_text TEXT,
  dimensions INTEGER NOT NULL,
  created_at INTEGER NOT NULL,
  UNIQUE(document_id, chunk_index)
);

CREATE INDEX IF NOT EXISTS idx_embeddings_document ON embeddings(document_id);
CREATE INDEX IF NOT EXISTS idx_embeddings_language ON embeddings(language);

CREATE TABLE IF NOT EXISTS index_status (
  document_id TEXT PRIMARY KEY,
  indexed_at INTEGER NOT NULL,
  version INTEGER DEFAULT 1,
  chunk_count INTEGER NOT NULL,
  content_hash TEXT NOT NULL,
  source_modified_at TEXT,
  attachment_modified_at TEXT
);

CREATE TABLE IF NOT EXISTS content_cache (
  document_id TEXT PRIMARY KEY,
  full_text TEXT NOT NULL,
  content_hash TEXT NOT NULL,
  cached_at INTEGER NOT NULL
);
"""

_UPSERT_VECTOR_SQL = (
    "INSERT INTO embeddings (document_id, chunk_index, vector, language, chunk_text, dimensions, created_at) "
    "VALUES (?, ?, ?, ?, ?, ?, ?) "
    "ON CONFLICT(document_id, chunk_index) DO UPDATE SET "
    "vector = excluded.vector, language = excluded.language, chunk_text = excluded.chunk_text, "
    "dimensions = excluded.dimensions, created_at = excluded.created_at"
)
_UPSERT_STATUS_SQL = (
    "INSERT OR REPLACE INTO index_status "
    "(document_id, indexed_at, version, chunk_count, content_hash, source_modified_at, attachment_modified_at) "
    "VALUES (?, ?, ?, ?, ?, ?, ?)"
)
_UPSERT_CACHE_SQL = (
    "INSERT OR REPLACE INTO content_cache (document_id, full_text, content_hash, cached_at) VALUES (?, ?, ?, ?)"
)


def _now() -> int:
    return int(time.time())


def _placeholders(values: Sequence[object]) -> str:
    return ",".join("?" for _ in values)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SQLiteVectorStore:
    """Durable vector persistence and brute-force cosine search.

    One connection is shared by every thread and guarded by a re-entrant lock;
    all writes run inside explicit transactions, so readers only ever observe
    committed documents.
    """

    _logger = get_logger("storage")

    def __init__(
        self,
        path: str | Path = ":memory:",
        *,
        dimensions: int | None = None,
        quantize: bool = False,
        search_batch_size: int = 5000,
    ) -> None:
        self._path = str(path)
        self._configured_dimensions = dimensions
        self._quantize = quantize
        self._batch_size = max(search_batch_size, 1)
        self._lock = threading.RLock()
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._con = sqlite3.connect(self._path, check_same_thread=False, isolation_level=None)
        self._con.row_factory = sqlite3.Row
        if self._path != ":memory:":
            self._con.execute("PRAGMA journal_mode=WAL")
        self._con.executescript(SCHEMA_SQL)
        self._ensure_columns()

    # -- lifecycle -------------------------------------------------------

    def close(self) -> None:
        with self._lock:
            self._con.close()

    def __enter__(self) -> "SQLiteVectorStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def path(self) -> str:
        return self._path

    @property
    def quantized(self) -> bool:
        return self._quantize

    def _ensure_columns(self) -> None:
        """Add timestamp columns missing from index_status tables of older databases."""

        cols = {row[1] for row in self._con.execute("PRAGMA table_info(index_status)").fetchall()}
        with self._transaction() as con:
            if "source_modified_at" not in cols:
                con.execute("ALTER TABLE index_status ADD COLUMN source_modified_at TEXT")
            if "attachment_modified_at" not in cols:
                con.execute("ALTER TABLE index_status ADD COLUMN attachment_modified_at TEXT")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._con.execute("BEGIN IMMEDIATE")
            try:
                yield self._con
            except BaseException:
                self._con.execute("ROLLBACK")
                raise
            self._con.execute("COMMIT")

    def _query(self, sql: str, params: Sequence[object] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._con.execute(sql, params).fetchall()

    # -- dimensions ------------------------------------------------------

    @property
    def embedding_width(self) -> int | None:
        """Width of stored vectors, else the configured width, else ``None``."""

        rows = self._query("SELECT dimensions FROM embeddings LIMIT 1")
        if rows:
            return int(rows[0]["dimensions"])
        return self._configured_dimensions

    def _check_width(self, width: int, *, context: str) -> None:
        established = self.embedding_width
        if established is not None and established != width:
            raise DimensionMismatchError(established, width, context=context)

    @staticmethod
    def _validate_records(records: Sequence[VectorRecord]) -> int:
        widths = set()
        for record in records:
            if record.dimensions != len(record.vector):
                raise DimensionMismatchError(record.dimensions, len(record.vector), context="record")
            widths.add(record.dimensions)
        if len(widths) > 1:
            expected = records[0].dimensions
            actual = next(width for width in widths if width != expected)
            raise DimensionMismatchError(expected, actual, context="batch")
        return widths.pop()

    # -- vectors ---------------------------------------------------------

    def upsert_vectors(self, records: Sequence[VectorRecord]) -> int:
        """Insert or replace records atomically; returns the number written."""

        if not records:
            return 0
        width = self._validate_records(records)
        with self._transaction() as con:
            self._check_width(width, context="insert")
            self._write_vectors(con, records)
        return len(records)

    def _write_vectors(self, con: sqlite3.Connection, records: Iterable[VectorRecord]) -> None:
        created_at = _now()
        con.executemany(
            _UPSERT_VECTOR_SQL,
            [
                (
                    record.document_id,
                    record.chunk_index,
                    encode_vector(record.vector, quantized=self._quantize),
                    record.language,
                    record.chunk_text,
                    record.dimensions,
                    created_at,
                )
                for record in records
            ],
        )

    def commit_document(
        self,
        document_id: str,
        records: Sequence[VectorRecord],
        status: IndexStatus,
        content: ContentCacheEntry | None = None,
    ) -> None:
        """Replace a document's vectors and write its status and cache entry in one transaction."""

        if any(record.document_id != document_id for record in records):
            raise ValueError(f"records do not all belong to {document_id}")
        if status.document_id != document_id:
            raise ValueError(f"status belongs to {status.document_id}, not {document_id}")
        width = self._validate_records(records) if records else None
        with self._transaction() as con:
            con.execute("DELETE FROM embeddings WHERE document_id = ?", (document_id,))
            if width is not None:
                self._check_width(width, context="insert")
                self._write_vectors(con, records)
            self._write_status(con, status)
            if content is not None:
                self._write_cache(con, content)

    def get_document_vectors(self, document_id: str) -> List[VectorRecord]:
        rows = self._query(
            "SELECT document_id, chunk_index, vector, language, chunk_text, dimensions "
            "FROM embeddings WHERE document_id = ? ORDER BY chunk_index",
            (document_id,),
        )
        return [
            VectorRecord(
                document_id=row["document_id"],
                chunk_index=row["chunk_index"],
                vector=tuple(float(value) for value in decode_vector(row["vector"], row["dimensions"])),
                language=row["language"],
                chunk_text=row["chunk_text"] or "",
                dimensions=row["dimensions"],
            )
            for row in rows
        ]

    def get_document_chunks(self, document_ids: Sequence[str]) -> Dict[str, List[Chunk]]:
        result: Dict[str, List[Chunk]] = {}
        if not document_ids:
            return result
        ids = list(document_ids)
        rows = self._query(
            "SELECT document_id, chunk_index, chunk_text, language FROM embeddings "
            f"WHERE document_id IN ({_placeholders(ids)}) ORDER BY document_id, chunk_index",
            ids,
        )
        for row in rows:
            result.setdefault(row["document_id"], []).append(
                Chunk(
                    document_id=row["document_id"],
                    chunk_index=row["chunk_index"],
                    text=row["chunk_text"] or "",
                    language=row["language"],
                )
            )
        return result

    def delete_document_vectors(self, document_id: str, also_delete_cache: bool = False) -> None:
        """Remove vectors and index status; the content cache only when asked."""

        with self._transaction() as con:
            con.execute("DELETE FROM embeddings WHERE document_id = ?", (document_id,))
            con.execute("DELETE FROM index_status WHERE document_id = ?", (document_id,))
            if also_delete_cache:
                con.execute("DELETE FROM content_cache WHERE document_id = ?", (document_id,))
        self._logger.info("store.document.deleted", document_id=document_id, cache_deleted=also_delete_cache)

    def clear_vectors(self) -> None:
        """Drop every vector and index status while keeping the content cache."""

        with self._transaction() as con:
            con.execute("DELETE FROM embeddings")
            con.execute("DELETE FROM index_status")
        self._logger.info("store.vectors.cleared")

    def clear_all(self) -> None:
        with self._transaction() as con:
            con.execute("DELETE FROM embeddings")
            con.execute("DELETE FROM index_status")
            con.execute("DELETE FROM content_cache")
        self._logger.info("store.cleared")

    # -- search ----------------------------------------------------------

    def search(
        self,
        query_vector: Sequence[float] | np.ndarray,
        *,
        top_k: int = 10,
        language: str | None = None,
        document_ids: Sequence[str] | None = None,
        min_score: float | None = None,
    ) -> List[SearchHit]:
        """Return the ``top_k`` most similar chunks, best first.

        Rows are scanned in ``search_batch_size`` pages and at most ``2 * top_k``
        candidates are held between pages.
        """

        if top_k <= 0:
            return []
        query = as_array(query_vector)
        query_norm = float(np.linalg.norm(query))
        if query_norm == 0.0:
            return []
        width = self.embedding_width
        if width is None:
            return []
        if query.shape[0] != width:
            raise DimensionMismatchError(width, int(query.shape[0]), context="query")

        normalized = query.astype(np.float64) / query_norm
        query_int8 = quantize(query)[0].astype(np.int64)
        query_int8_norm = float(np.sqrt(np.dot(query_int8, query_int8)))

        conditions = ["id > ?"]
        params: List[object] = []
        if language and language != "all":
            conditions.append("language = ?")
            params.append(language)
        if document_ids is not None:
            ids = list(document_ids)
            if not ids:
                return []
            conditions.append(f"document_id IN ({_placeholders(ids)})")
            params.extend(ids)
        sql = (
            "SELECT id, document_id, chunk_index, vector, language, chunk_text, dimensions FROM embeddings "
            f"WHERE {' AND '.join(conditions)} ORDER BY id LIMIT ?"
        )

        candidates: List[SearchHit] = []
        last_id = 0
        scanned = 0
        skipped = 0
        with TimedSection(PipelineMetrics.observe_search) as timer:
            while True:
                rows = self._query(sql, [last_id, *params, self._batch_size])
                if not rows:
                    break
                last_id = rows[-1]["id"]
                usable = [row for row in rows if row["dimensions"] == width]
                skipped += len(rows) - len(usable)
                scores = self._score_rows(usable, width, normalized, query_int8, query_int8_norm)
                for row, score in zip(usable, scores):
                    if min_score is not None and score < min_score:
                        continue
                    candidates.append(
                        SearchHit(
                            document_id=row["document_id"],
                            chunk_index=row["chunk_index"],
                            score=score,
                            chunk_text=row["chunk_text"] or "",
                            language=row["language"],
                        )
                    )
                    if len(candidates) > top_k * 2:
                        candidates.sort(key=lambda hit: hit.score, reverse=True)
                        del candidates[top_k:]
                scanned += len(rows)
                if len(rows) < self._batch_size:
                    break
            candidates.sort(key=lambda hit: hit.score, reverse=True)
        results = candidates[:top_k]
        self._logger.debug(
            "store.search.complete",
            scanned=scanned,
            skipped=skipped,
            returned=len(results),
            duration_seconds=timer.duration,
        )
        return results

    @staticmethod
    def _score_rows(
        rows: Sequence[sqlite3.Row],
        width: int,
        normalized_query: np.ndarray,
        query_int8: np.ndarray,
        query_int8_norm: float,
    ) -> List[float]:
        scores = [0.0] * len(rows)
        float_positions: List[int] = []
        int8_positions: List[int] = []
        for position, row in enumerate(rows):
            if len(row["vector"]) == 4 * width:
                float_positions.append(position)
            elif len(row["vector"]) == 4 + width:
                int8_positions.append(position)

        if float_positions:
            blob = b"".join(rows[position]["vector"] for position in float_positions)
            matrix = np.frombuffer(blob, dtype="<f4").reshape(len(float_positions), width).astype(np.float64)
            norms = np.linalg.norm(matrix, axis=1)
            dots = matrix @ normalized_query
            with np.errstate(divide="ignore", invalid="ignore"):
                values = np.where(norms > 0, dots / norms, 0.0)
            for position, value in zip(float_positions, values):
                scores[position] = float(np.clip(value, -1.0, 1.0))

        if int8_positions:
            blob = b"".join(rows[position]["vector"][4:] for position in int8_positions)
            matrix = np.frombuffer(blob, dtype="i1").reshape(len(int8_positions), width).astype(np.int64)
            norms = np.sqrt(np.einsum("ij,ij->i", matrix, matrix).astype(np.float64))
            dots = (matrix @ query_int8).astype(np.float64)
            denominator = norms * query_int8_norm
            with np.errstate(divide="ignore", invalid="ignore"):
                values = np.where(denominator > 0, dots / denominator, 0.0)
            for position, value in zip(int8_positions, values):
                scores[position] = float(np.clip(value, -1.0, 1.0))
        return scores

    # -- index status ----------------------------------------------------

    def get_index_status(self, document_id: str) -> IndexStatus | None:
        rows = self._query(
            "SELECT document_id, indexed_at, version, chunk_count, content_hash, "
            "source_modified_at, attachment_modified_at FROM index_status WHERE document_id = ?",
            (document_id,),
        )
        if not rows:
            return None
        row = rows[0]
        return IndexStatus(
            document_id=row["document_id"],
            indexed_at=row["indexed_at"],
            chunk_count=row["chunk_count"],
            content_hash=row["content_hash"],
            version=row["version"] if row["version"] is not None else 1,
            source_modified_at=row["source_modified_at"],
            attachment_modified_at=row["attachment_modified_at"],
        )

    def update_index_status(self, status: IndexStatus) -> None:
        with self._transaction() as con:
            self._write_status(con, status)

    @staticmethod
    def _write_status(con: sqlite3.Connection, status: IndexStatus) -> None:
        con.execute(
            _UPSERT_STATUS_SQL,
            (
                status.document_id,
                status.indexed_at,
                status.version,
                status.chunk_count,
                status.content_hash,
                status.source_modified_at,
                status.attachment_modified_at,
            ),
        )

    def get_indexed_documents(self) -> Set[str]:
        return {row["document_id"] for row in self._query("SELECT document_id FROM index_status")}

    def needs_reindex(self, document_id: str, content_hash: str) -> bool:
        status = self.get_index_status(document_id)
        return status is None or status.content_hash != content_hash

    def needs_reindex_by_timestamp(
        self,
        document_id: str,
        source_modified_at: str | None,
        attachment_modified_at: str | None,
    ) -> bool:
        """Cheap change check; ``True`` unless both stored timestamps match exactly."""

        status = self.get_index_status(document_id)
        if status is None:
            return True
        if not status.source_modified_at or not status.attachment_modified_at:
            return True
        if status.source_modified_at != source_modified_at:
            return True
        return status.attachment_modified_at != attachment_modified_at

    # -- content cache ---------------------------------------------------

    def get_cached_content(self, document_id: str) -> ContentCacheEntry | None:
        rows = self._query(
            "SELECT document_id, full_text, content_hash, cached_at FROM content_cache WHERE document_id = ?",
            (document_id,),
        )
        if not rows:
            return None
        row = rows[0]
        return ContentCacheEntry(
            document_id=row["document_id"],
            full_text=row["full_text"],
            content_hash=row["content_hash"],
            cached_at=row["cached_at"],
        )

    def set_cached_content(self, document_id: str, full_text: str, content_hash: str) -> None:
        entry = ContentCacheEntry(document_id, full_text, content_hash, _now())
        with self._transaction() as con:
            self._write_cache(con, entry)

    @staticmethod
    def _write_cache(con: sqlite3.Connection, entry: ContentCacheEntry) -> None:
        con.execute(_UPSERT_CACHE_SQL, (entry.document_id, entry.full_text, entry.content_hash, entry.cached_at))

    def delete_cached_content(self, document_id: str) -> None:
        with self._transaction() as con:
            con.execute("DELETE FROM content_cache WHERE document_id = ?", (document_id,))

    def list_cached_content(self) -> List[CachedContentInfo]:
        rows = self._query(
            "SELECT document_id, LENGTH(full_text) AS content_length, content_hash, cached_at "
            "FROM content_cache ORDER BY cached_at DESC, document_id"
        )
        return [
            CachedContentInfo(
                document_id=row["document_id"],
                content_length=row["content_length"],
                content_hash=row["content_hash"],
                cached_at=row["cached_at"],
            )
            for row in rows
        ]

    def get_full_content_batch(self, document_ids: Sequence[str]) -> Dict[str, str]:
        ids = list(document_ids)
        if not ids:
            return {}
        rows = self._query(
            f"SELECT document_id, full_text FROM content_cache WHERE document_id IN ({_placeholders(ids)})",
            ids,
        )
        return {row["document_id"]: row["full_text"] for row in rows}

    def search_cached_content(
        self,
        term: str,
        *,
        limit: int = 20,
        case_sensitive: bool = False,
    ) -> List[CacheSearchHit]:
        """Substring search over cached full texts, ranked by match count."""

        if not term or limit <= 0:
            return []
        if case_sensitive:
            rows = self._query(
                "SELECT document_id, full_text FROM content_cache WHERE instr(full_text, ?) > 0",
                (term,),
            )
        else:
            rows = self._query(
                "SELECT document_id, full_text FROM content_cache WHERE full_text LIKE ? ESCAPE '\\'",
                (f"%{_escape_like(term)}%",),
            )
        needle = term if case_sensitive else term.lower()
        hits: List[CacheSearchHit] = []
        for row in rows:
            content: str = row["full_text"]
            haystack = content if case_sensitive else content.lower()
            count = haystack.count(needle)
            if count == 0:
                continue
            first = haystack.index(needle)
            start = max(0, first - SNIPPET_RADIUS)
            end = min(len(content), first + len(term) + SNIPPET_RADIUS)
            snippet = content[start:end]
            if start > 0:
                snippet = "..." + snippet
            if end < len(content):
                snippet = snippet + "..."
            hits.append(CacheSearchHit(document_id=row["document_id"], snippet=snippet, match_count=count))
        hits.sort(key=lambda hit: hit.match_count, reverse=True)
        return hits[:limit]

    # -- maintenance -----------------------------------------------------

    def migrate_to_quantized(self, batch_size: int = 1000) -> int:
        """Rewrite float32 rows in the int8 format; returns the number converted."""

        batch_size = max(batch_size, 1)
        self._quantize = True
        converted = 0
        while True:
            with self._transaction() as con:
                rows = con.execute(
                    "SELECT id, vector, dimensions FROM embeddings WHERE LENGTH(vector) = 4 * dimensions LIMIT ?",
                    (batch_size,),
                ).fetchall()
                con.executemany(
                    "UPDATE embeddings SET vector = ? WHERE id = ?",
                    [(encode_int8(decode_vector(row["vector"], row["dimensions"])), row["id"]) for row in rows],
                )
            converted += len(rows)
            if len(rows) < batch_size:
                break
        self._logger.info("store.migrate.quantized", converted=converted)
        return converted

    def get_stats(self) -> StoreStats:
        with self._lock:
            total = self._con.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]
            documents = self._con.execute("SELECT COUNT(DISTINCT document_id) FROM embeddings").fetchone()[0]
            languages: Mapping[str, int] = {
                row[0]: row[1]
                for row in self._con.execute("SELECT language, COUNT(*) FROM embeddings GROUP BY language")
            }
            quantized = self._con.execute(
                "SELECT COUNT(*) FROM embeddings WHERE LENGTH(vector) = 4 + dimensions"
            ).fetchone()[0]
            cached_items, cached_bytes = self._con.execute(
                "SELECT COUNT(*), COALESCE(SUM(LENGTH(CAST(full_text AS BLOB))), 0) FROM content_cache"
            ).fetchone()
        PipelineMetrics.set_stored_vectors(total)
        return StoreStats(
            total_vectors=total,
            total_documents=documents,
            language_counts={"zh": languages.get("zh", 0), "en": languages.get("en", 0)},
            cached_items=cached_items,
            cached_bytes=cached_bytes,
            quantized_fraction=quantized / total if total else 0.0,
            embedding_width=self.embedding_width,
        )


__all__ = ["SQLiteVectorStore"]
