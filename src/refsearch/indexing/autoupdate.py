"""Debounced bridge from library change notifications to incremental builds."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, List, Set

from refsearch.metrics.observability import get_logger

if TYPE_CHECKING:
    from refsearch.indexing.service import IndexOrchestrator


class DebouncedIndexScheduler:
    """Collect added documents and index them once notifications settle.

    Deletions are applied immediately. Additions restart a timer; when it
    fires the pending ids are handed to a background incremental build. If a
    build is already running the timer is re-armed and the ids stay pending.
    """

    _logger = get_logger("indexing.autoupdate")

    def __init__(self, orchestrator: "IndexOrchestrator", debounce_seconds: float = 5.0) -> None:
        self._orchestrator = orchestrator
        self._debounce = max(float(debounce_seconds), 0.0)
        self._lock = threading.Lock()
        self._pending: Set[str] = set()
        self._timer: threading.Timer | None = None
        self._closed = False

    @property
    def pending(self) -> List[str]:
        with self._lock:
            return sorted(self._pending)

    def on_document_added(self, document_id: str) -> None:
        with self._lock:
            if self._closed:
                return
            self._pending.add(document_id)
            self._arm()
        self._logger.debug("autoupdate.scheduled", document_id=document_id)

    def on_document_deleted(self, document_id: str) -> None:
        with self._lock:
            self._pending.discard(document_id)
        self._orchestrator.delete_document_index(document_id, purge_cache=True)
        self._logger.info("autoupdate.deleted", document_id=document_id)

    def flush(self) -> bool:
        """Start the build for pending ids now; ``False`` if it had to be deferred."""

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._closed or not self._pending:
                return True
            document_ids = sorted(self._pending)
            started = self._orchestrator.start_build(document_ids)
            if started:
                self._pending.difference_update(document_ids)
            else:
                self._arm()
        if started:
            self._logger.info("autoupdate.build_started", documents=len(document_ids))
        else:
            self._logger.info("autoupdate.deferred", documents=len(document_ids))
        return started

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _arm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        timer = threading.Timer(self._debounce, self.flush)
        timer.daemon = True
        self._timer = timer
        timer.start()


__all__ = ["DebouncedIndexScheduler"]
