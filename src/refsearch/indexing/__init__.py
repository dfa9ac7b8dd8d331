"""Index building and job control."""

from .autoupdate import DebouncedIndexScheduler
from .service import BuildResult, IndexOrchestrator, content_hash
from .state import (
    CancellationToken,
    FailedItem,
    IndexJobState,
    InvalidTransitionError,
    JobStateMachine,
    JobStatePersistence,
    JobStatus,
    PauseGate,
    restore_state,
)

__all__ = [
    "BuildResult",
    "CancellationToken",
    "DebouncedIndexScheduler",
    "FailedItem",
    "IndexJobState",
    "IndexOrchestrator",
    "InvalidTransitionError",
    "JobStateMachine",
    "JobStatePersistence",
    "JobStatus",
    "PauseGate",
    "content_hash",
    "restore_state",
]
