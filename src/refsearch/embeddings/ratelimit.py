"""Sliding-window request and token rate limiting."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, List, Literal, Tuple

from refsearch.errors import EmbeddingAPIError, ErrorKind
from refsearch.metrics.observability import get_logger

WINDOW_SECONDS = 60.0
MIN_WAIT_SECONDS = 1.0
WARN_RATIO = 0.8

RateLimitListener = Callable[[str, float], None]


class SlidingWindowRateLimiter:
    """Caps requests and tokens over the trailing 60 seconds.

    ``rpm`` or ``tpm`` of ``0`` disables that limit. In ``wait`` mode callers
    block until the window has room; in ``fail`` mode they receive a
    ``rate_limit`` error carrying the wait that would have been needed.
    """

    _logger = get_logger("embeddings.ratelimit")

    def __init__(
        self,
        rpm: int = 60,
        tpm: int = 150_000,
        *,
        mode: Literal["wait", "fail"] = "wait",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._rpm = rpm
        self._tpm = tpm
        self._mode = mode
        self._clock = clock
        self._sleep = sleep
        self._window: Deque[Tuple[float, int]] = deque()
        self._lock = threading.Lock()
        self._listeners: List[RateLimitListener] = []

    @property
    def limits(self) -> Tuple[int, int, str]:
        return self._rpm, self._tpm, self._mode

    def configure(self, *, rpm: int | None = None, tpm: int | None = None, mode: str | None = None) -> None:
        with self._lock:
            if rpm is not None:
                self._rpm = rpm
            if tpm is not None:
                self._tpm = tpm
            if mode is not None:
                if mode not in ("wait", "fail"):
                    raise ValueError(f"unknown rate limit mode: {mode}")
                self._mode = mode  # type: ignore[assignment]

    def add_listener(self, listener: RateLimitListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def current_usage(self) -> Tuple[int, int]:
        """Return (requests, tokens) inside the current window."""

        with self._lock:
            self._evict(self._clock())
            return len(self._window), sum(tokens for _, tokens in self._window)

    def check(self, tokens: int) -> Tuple[float, str | None]:
        """Return the wait in seconds needed before a request of ``tokens`` may start."""

        with self._lock:
            now = self._clock()
            self._evict(now)
            requests = len(self._window)
            used = sum(value for _, value in self._window)
            # a request larger than the whole budget still goes through on an empty window
            if not self._window:
                return 0.0, None
            wait = max(self._window[0][0] + WINDOW_SECONDS - now, MIN_WAIT_SECONDS)
            if self._rpm > 0 and requests >= self._rpm:
                return wait, "rpm"
            if self._tpm > 0 and used + tokens > self._tpm:
                return wait, "tpm"
            if self._rpm > 0 and requests >= self._rpm * WARN_RATIO:
                self._logger.warning("ratelimit.approaching", limit="rpm", current=requests, maximum=self._rpm)
            if self._tpm > 0 and used >= self._tpm * WARN_RATIO:
                self._logger.warning("ratelimit.approaching", limit="tpm", current=used, maximum=self._tpm)
            return 0.0, None

    def acquire(self, tokens: int) -> None:
        while True:
            wait, reason = self.check(tokens)
            if reason is None:
                return
            if self._mode == "fail":
                self.notify(f"{reason} limit reached", wait)
                raise EmbeddingAPIError(
                    f"{reason.upper()} limit reached",
                    ErrorKind.RATE_LIMIT,
                    retry_after_seconds=wait,
                )
            self.wait(wait, f"{reason} limit reached")

    def notify(self, reason: str, seconds: float) -> None:
        """Tell listeners a request was held back or refused for ``reason``."""

        self._logger.warning("ratelimit.hit", reason=reason, mode=self._mode, wait_seconds=round(seconds, 3))
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(reason, seconds)

    def wait(self, seconds: float, reason: str) -> None:
        """Block for ``seconds`` after notifying listeners."""

        self.notify(reason, seconds)
        self._sleep(seconds)

    def record(self, tokens: int) -> None:
        with self._lock:
            now = self._clock()
            self._window.append((now, tokens))
            self._evict(now)

    def reset(self) -> None:
        with self._lock:
            self._window.clear()

    def _evict(self, now: float) -> None:
        cutoff = now - WINDOW_SECONDS
        while self._window and self._window[0][0] <= cutoff:
            self._window.popleft()


__all__ = ["RateLimitListener", "SlidingWindowRateLimiter", "WINDOW_SECONDS"]
