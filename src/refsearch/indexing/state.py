"""Index job state machine, control primitives and persistence."""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List

from refsearch.metrics.observability import get_logger


class JobStatus(str, Enum):
    IDLE = "idle"
    INDEXING = "indexing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    ABORTED = "aborted"


_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.IDLE: frozenset({JobStatus.INDEXING}),
    JobStatus.INDEXING: frozenset(
        {JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.ABORTED}
    ),
    JobStatus.PAUSED: frozenset({JobStatus.INDEXING, JobStatus.ABORTED}),
    JobStatus.COMPLETED: frozenset({JobStatus.INDEXING}),
    JobStatus.ERROR: frozenset({JobStatus.INDEXING, JobStatus.ABORTED}),
    JobStatus.ABORTED: frozenset({JobStatus.INDEXING}),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a status change is not allowed by the job state machine."""


@dataclass(frozen=True)
class IndexJobState:
    """Immutable snapshot of the indexing job."""

    status: JobStatus = JobStatus.IDLE
    processed: int = 0
    total: int = 0
    current_document: str | None = None
    estimated_remaining_ms: int | None = None
    last_error: str | None = None
    error_kind: str | None = None
    error_retryable: bool | None = None
    failed_count: int = 0
    started_at: float | None = None
    job_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in (JobStatus.INDEXING, JobStatus.PAUSED)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "IndexJobState":
        return cls(
            status=JobStatus(data.get("status", JobStatus.IDLE.value)),
            processed=int(data.get("processed") or 0),
            total=int(data.get("total") or 0),
            current_document=data.get("current_document"),
            estimated_remaining_ms=data.get("estimated_remaining_ms"),
            last_error=data.get("last_error"),
            error_kind=data.get("error_kind"),
            error_retryable=data.get("error_retryable"),
            failed_count=int(data.get("failed_count") or 0),
            started_at=data.get("started_at"),
            job_id=data.get("job_id"),
        )


@dataclass(frozen=True)
class FailedItem:
    document_id: str
    error: str
    kind: str
    timestamp: float

    def to_dict(self) -> dict:
        return asdict(self)


StateObserver = Callable[[IndexJobState], None]


class CancellationToken:
    """One-way cancellation flag checked at suspension points."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class PauseGate:
    """Cooperative pause: the worker blocks in :meth:`wait` until released."""

    def __init__(self) -> None:
        self._open = threading.Event()
        self._open.set()

    @property
    def pause_requested(self) -> bool:
        return not self._open.is_set()

    def request_pause(self) -> None:
        self._open.clear()

    def release(self) -> None:
        self._open.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._open.wait(timeout)


class JobStateMachine:
    """Holds the single job state and pushes snapshots to observers."""

    _logger = get_logger("indexing.state")

    def __init__(self, initial: IndexJobState | None = None) -> None:
        self._state = initial or IndexJobState()
        self._lock = threading.Lock()
        self._observers: List[StateObserver] = []

    @property
    def state(self) -> IndexJobState:
        with self._lock:
            return self._state

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def update(self, **changes: object) -> IndexJobState:
        """Apply ``changes`` and notify observers; status changes are validated."""

        with self._lock:
            previous = self._state
            target = changes.get("status")
            if target is not None and target != previous.status:
                allowed = _TRANSITIONS[previous.status]
                if target not in allowed:
                    raise InvalidTransitionError(f"{previous.status.value} -> {JobStatus(target).value}")
            self._state = replace(previous, **changes)
            snapshot = self._state
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(snapshot)
            except Exception:  # noqa: BLE001 - an observer must not break the worker
                self._logger.exception("index.observer.failed")
        return snapshot

    def reset(self, state: IndexJobState) -> None:
        with self._lock:
            self._state = state


class JobStatePersistence:
    """JSON file holding the last paused or failed job for restore after restart."""

    _logger = get_logger("indexing.state")

    def __init__(self, path: Path | None) -> None:
        self._path = Path(path) if path is not None else None

    def load(self) -> IndexJobState | None:
        if self._path is None or not self._path.exists():
            return None
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            return IndexJobState.from_dict(payload)
        except (OSError, ValueError, TypeError) as exc:
            self._logger.warning("index.state.load_failed", path=str(self._path), error=str(exc))
            return None

    def save(self, state: IndexJobState) -> None:
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(state.to_dict()), encoding="utf-8")
        except OSError as exc:
            self._logger.warning("index.state.save_failed", path=str(self._path), error=str(exc))

    def clear(self) -> None:
        if self._path is None:
            return
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            self._logger.warning("index.state.clear_failed", path=str(self._path), error=str(exc))


def restore_state(persisted: IndexJobState | None) -> IndexJobState:
    """Map a persisted state onto its post-restart form (no live loop)."""

    if persisted is None:
        return IndexJobState()
    if persisted.status in (JobStatus.INDEXING, JobStatus.PAUSED):
        return replace(persisted, status=JobStatus.PAUSED, current_document=None)
    if persisted.status is JobStatus.ERROR:
        return replace(persisted, current_document=None)
    return IndexJobState()


__all__ = [
    "CancellationToken",
    "FailedItem",
    "IndexJobState",
    "InvalidTransitionError",
    "JobStateMachine",
    "JobStatePersistence",
    "JobStatus",
    "PauseGate",
    "StateObserver",
    "restore_state",
]
