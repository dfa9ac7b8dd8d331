"""Document sources supplying raw text to the index builder."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Protocol, Sequence

from refsearch.errors import DocumentExtractionError, ErrorKind
from refsearch.models import DocumentText, DocumentTimestamps


class DocumentSource(Protocol):
    """Host library collaborator consumed by the index builder."""

    def list_documents(self) -> Sequence[str]:
        """Return every known document id."""

    def get_full_text(self, document_id: str) -> DocumentText:
        """Return extracted text and modification stamps, raising DocumentExtractionError on failure."""

    def get_timestamps(self, document_id: str) -> DocumentTimestamps:
        """Return modification stamps without extracting text."""


class InMemoryDocumentSource:
    """Mutable mapping-backed source, handy for embedding the engine and for tests."""

    def __init__(self, documents: Mapping[str, DocumentText | str] | None = None) -> None:
        self._lock = threading.Lock()
        self._documents: Dict[str, DocumentText] = {}
        self._failing: Dict[str, str] = {}
        for document_id, value in (documents or {}).items():
            self.put(document_id, value)

    def put(self, document_id: str, value: DocumentText | str) -> None:
        document = value if isinstance(value, DocumentText) else DocumentText(text=value)
        with self._lock:
            self._documents[document_id] = document

    def remove(self, document_id: str) -> None:
        with self._lock:
            self._documents.pop(document_id, None)

    def fail_extraction(self, document_id: str, message: str = "extraction failed") -> None:
        with self._lock:
            self._failing[document_id] = message

    def clear_failure(self, document_id: str) -> None:
        with self._lock:
            self._failing.pop(document_id, None)

    def list_documents(self) -> List[str]:
        with self._lock:
            return list(self._documents)

    def get_full_text(self, document_id: str) -> DocumentText:
        with self._lock:
            if document_id in self._failing:
                raise DocumentExtractionError(self._failing[document_id], ErrorKind.UNKNOWN)
            document = self._documents.get(document_id)
        if document is None:
            raise DocumentExtractionError(f"Unknown document: {document_id}", ErrorKind.UNKNOWN)
        return document

    def get_timestamps(self, document_id: str) -> DocumentTimestamps:
        with self._lock:
            document = self._documents.get(document_id)
        if document is None:
            return DocumentTimestamps()
        return document.timestamps


class DirectoryDocumentSource:
    """Plain-text files under a directory; ids are POSIX paths relative to ``root``.

    The file's modification time stands in for the record timestamp and its
    inode change time for the attachment timestamp.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        suffixes: Iterable[str] = (".txt", ".md"),
        encoding: str = "utf-8",
    ) -> None:
        self._root = Path(root)
        self._suffixes = {suffix.lower() for suffix in suffixes}
        self._encoding = encoding

    @property
    def root(self) -> Path:
        return self._root

    def list_documents(self) -> List[str]:
        if not self._root.is_dir():
            return []
        return sorted(
            path.relative_to(self._root).as_posix()
            for path in self._root.rglob("*")
            if path.is_file() and path.suffix.lower() in self._suffixes
        )

    def _resolve(self, document_id: str) -> Path:
        path = (self._root / document_id).resolve()
        if self._root.resolve() not in path.parents:
            raise DocumentExtractionError(f"Document outside source root: {document_id}", ErrorKind.INVALID_REQUEST)
        return path

    def get_full_text(self, document_id: str) -> DocumentText:
        path = self._resolve(document_id)
        try:
            stat = path.stat()
            text = path.read_text(encoding=self._encoding)
        except (OSError, UnicodeDecodeError) as exc:
            raise DocumentExtractionError(f"Failed to read {document_id}: {exc}", ErrorKind.UNKNOWN) from exc
        return DocumentText(
            text=text,
            source_modified_at=str(stat.st_mtime_ns),
            attachment_modified_at=str(stat.st_ctime_ns),
        )

    def get_timestamps(self, document_id: str) -> DocumentTimestamps:
        try:
            stat = self._resolve(document_id).stat()
        except OSError:
            return DocumentTimestamps()
        return DocumentTimestamps(str(stat.st_mtime_ns), str(stat.st_ctime_ns))


__all__ = ["DirectoryDocumentSource", "DocumentSource", "InMemoryDocumentSource"]
