"""Embedding usage accounting with a persisted cumulative portion."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path

from refsearch.metrics.observability import get_logger

_PERSISTED_FIELDS = (
    "total_tokens",
    "total_requests",
    "total_texts",
    "rate_limit_hits",
    "last_reset_at",
)


@dataclass(frozen=True)
class UsageStats:
    """Snapshot of embedding usage."""

    total_tokens: int
    total_requests: int
    total_texts: int
    estimated_cost_usd: float
    last_reset_at: float
    session_tokens: int
    session_requests: int
    session_texts: int
    current_rpm: int
    current_tpm: int
    rate_limit_hits: int
    updated_at: float

    def to_dict(self) -> dict:
        return asdict(self)


class UsageTracker:
    """Thread-safe usage counters.

    Cumulative counters are written to ``path`` after every change and loaded
    back at construction; session counters live in memory only.
    """

    _logger = get_logger("embeddings.usage")

    def __init__(self, path: Path | None = None, *, cost_per_million_tokens: float = 0.02) -> None:
        self._path = Path(path) if path is not None else None
        self._cost_per_million = cost_per_million_tokens
        self._lock = threading.Lock()
        self._cumulative = self._empty_cumulative()
        self._session = {"tokens": 0, "requests": 0, "texts": 0}
        self._updated_at = time.time()
        self._load()

    @property
    def cost_per_million_tokens(self) -> float:
        return self._cost_per_million

    @cost_per_million_tokens.setter
    def cost_per_million_tokens(self, value: float) -> None:
        self._cost_per_million = value

    def record_request(self, tokens: int, texts: int) -> None:
        with self._lock:
            self._cumulative["total_tokens"] += tokens
            self._cumulative["total_requests"] += 1
            self._cumulative["total_texts"] += texts
            self._session["tokens"] += tokens
            self._session["requests"] += 1
            self._session["texts"] += texts
            self._updated_at = time.time()
            self._save_locked()

    def record_rate_limit_hit(self) -> None:
        with self._lock:
            self._cumulative["rate_limit_hits"] += 1
            self._updated_at = time.time()
            self._save_locked()

    def snapshot(self, *, current_rpm: int = 0, current_tpm: int = 0) -> UsageStats:
        with self._lock:
            total_tokens = int(self._cumulative["total_tokens"])
            return UsageStats(
                total_tokens=total_tokens,
                total_requests=int(self._cumulative["total_requests"]),
                total_texts=int(self._cumulative["total_texts"]),
                estimated_cost_usd=total_tokens / 1_000_000 * self._cost_per_million,
                last_reset_at=float(self._cumulative["last_reset_at"]),
                session_tokens=self._session["tokens"],
                session_requests=self._session["requests"],
                session_texts=self._session["texts"],
                current_rpm=current_rpm,
                current_tpm=current_tpm,
                rate_limit_hits=int(self._cumulative["rate_limit_hits"]),
                updated_at=self._updated_at,
            )

    def reset(self, *, cumulative: bool = False) -> None:
        with self._lock:
            if cumulative:
                self._cumulative = self._empty_cumulative()
            self._session = {"tokens": 0, "requests": 0, "texts": 0}
            self._updated_at = time.time()
            self._save_locked()
        self._logger.info("usage.reset", cumulative=cumulative)

    @staticmethod
    def _empty_cumulative() -> dict:
        return {
            "total_tokens": 0,
            "total_requests": 0,
            "total_texts": 0,
            "rate_limit_hits": 0,
            "last_reset_at": time.time(),
        }

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            self._logger.warning("usage.load_failed", path=str(self._path), error=str(exc))
            return
        if not isinstance(payload, dict):
            return
        for key in _PERSISTED_FIELDS:
            value = payload.get(key)
            if isinstance(value, (int, float)):
                self._cumulative[key] = value

    def _save_locked(self) -> None:
        if self._path is None:
            return
        payload = {key: self._cumulative[key] for key in _PERSISTED_FIELDS}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(payload), encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as exc:
            self._logger.warning("usage.save_failed", path=str(self._path), error=str(exc))


__all__ = ["UsageStats", "UsageTracker"]
