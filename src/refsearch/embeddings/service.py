"""Embedding service: provider calls under rate, retry and cost governance."""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Callable, List, Sequence, Tuple

import httpx

from refsearch.chunking import detect_language, estimate_tokens
from refsearch.config import Settings
from refsearch.embeddings.providers import (
    EmbeddingProvider,
    HashEmbeddingProvider,
    OllamaProvider,
    OpenAICompatibleProvider,
    resolve_provider,
)
from refsearch.embeddings.ratelimit import RateLimitListener, SlidingWindowRateLimiter
from refsearch.embeddings.usage import UsageStats, UsageTracker
from refsearch.errors import EmbeddingAPIError, ErrorKind
from refsearch.metrics.observability import PipelineMetrics, get_logger
from refsearch.models import Language

DEFAULT_RETRY_AFTER_SECONDS = 60.0
_CONNECTION_PROBE = "connection test"


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for the embedding provider."""

    api_base: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "text-embedding-3-small"
    dimensions: int | None = 512
    provider: str = "auto"
    max_batch_size: int = 100
    timeout_seconds: float = 30.0
    max_retries: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingConfig":
        return cls(
            api_base=settings.embedding_api_base,
            api_key=settings.embedding_api_key,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            provider=settings.embedding_provider,
            max_batch_size=settings.embedding_max_batch_size,
            timeout_seconds=settings.embedding_timeout_seconds,
            max_retries=settings.embedding_max_retries,
        )


@dataclass(frozen=True)
class EmbeddingResult:
    vector: Tuple[float, ...]
    language: Language
    dimensions: int


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    message: str
    provider: str | None = None
    dimensions: int | None = None


def _retry_after(response: httpx.Response) -> float:
    header = response.headers.get("retry-after")
    if header:
        try:
            return max(float(header), 0.0)
        except ValueError:
            pass
    return DEFAULT_RETRY_AFTER_SECONDS


def classify_error(exc: BaseException) -> EmbeddingAPIError:
    """Map a provider-side failure onto the error taxonomy."""

    if isinstance(exc, EmbeddingAPIError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        status = response.status_code
        message = f"HTTP {status}: {response.text[:200]}"
        if status == 429:
            return EmbeddingAPIError(
                message,
                ErrorKind.RATE_LIMIT,
                status_code=status,
                retry_after_seconds=_retry_after(response),
            )
        if status in (401, 403):
            return EmbeddingAPIError(message, ErrorKind.AUTH, status_code=status)
        if status in (400, 404, 422):
            return EmbeddingAPIError(message, ErrorKind.INVALID_REQUEST, status_code=status)
        if status >= 500:
            return EmbeddingAPIError(message, ErrorKind.SERVER, status_code=status)
        return EmbeddingAPIError(message, ErrorKind.UNKNOWN, status_code=status)
    if isinstance(exc, httpx.TransportError):
        return EmbeddingAPIError(f"{type(exc).__name__}: {exc}", ErrorKind.NETWORK)
    if isinstance(exc, ValueError):
        # undecodable JSON bodies
        return EmbeddingAPIError(f"Malformed response: {exc}", ErrorKind.INVALID_REQUEST)
    return EmbeddingAPIError(str(exc) or type(exc).__name__, ErrorKind.UNKNOWN)


class EmbeddingService:
    """Turn text batches into vectors through a hot-swappable provider."""

    _logger = get_logger("embeddings")

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        usage: UsageTracker | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config or EmbeddingConfig()
        self._sleep = sleep
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter(sleep=sleep)
        self._usage = usage or UsageTracker()
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=self._config.timeout_seconds)
        self._lock = threading.RLock()
        self._detected_dimensions: int | None = None
        self._provider = self._build_provider(self._config)
        self._rate_limiter.add_listener(self._on_rate_limited)

    @classmethod
    def from_settings(cls, settings: Settings, *, client: httpx.Client | None = None) -> "EmbeddingService":
        limiter = SlidingWindowRateLimiter(
            settings.rate_limit_rpm,
            settings.rate_limit_tpm,
            mode=settings.rate_limit_mode,
        )
        usage = UsageTracker(
            settings.resolved_usage_stats_path,
            cost_per_million_tokens=settings.cost_per_million_tokens,
        )
        return cls(EmbeddingConfig.from_settings(settings), rate_limiter=limiter, usage=usage, client=client)

    # -- configuration -------------------------------------------------

    @property
    def config(self) -> EmbeddingConfig:
        return self._config

    @property
    def provider_name(self) -> str:
        return self._provider.name

    @property
    def detected_dimensions(self) -> int | None:
        return self._detected_dimensions

    @property
    def actual_dimensions(self) -> int | None:
        return self._detected_dimensions or self._config.dimensions

    @property
    def is_configured(self) -> bool:
        if self._provider.name == "hash":
            return True
        return bool(self._config.api_base and self._config.model)

    def update_config(self, **changes: object) -> EmbeddingConfig:
        """Swap configuration; the next call uses the new provider settings."""

        with self._lock:
            updated = replace(self._config, **changes)
            provider = self._build_provider(updated)
            identity_changed = (
                updated.api_base != self._config.api_base
                or updated.model != self._config.model
                or updated.dimensions != self._config.dimensions
                or provider.name != self._provider.name
            )
            self._config = updated
            self._provider = provider
            if identity_changed:
                self._detected_dimensions = None
        self._logger.info(
            "embedding.config.updated",
            api_base=updated.api_base,
            model=updated.model,
            dimensions=updated.dimensions,
            provider=provider.name,
            api_key_configured=bool(updated.api_key),
        )
        return updated

    def get_config(self) -> dict:
        data = asdict(self._config)
        data.pop("api_key")
        data["api_key_configured"] = bool(self._config.api_key)
        data["provider"] = self._provider.name
        data["detected_dimensions"] = self._detected_dimensions
        return data

    def update_rate_limits(
        self,
        *,
        rpm: int | None = None,
        tpm: int | None = None,
        mode: str | None = None,
        cost_per_million_tokens: float | None = None,
    ) -> None:
        self._rate_limiter.configure(rpm=rpm, tpm=tpm, mode=mode)
        if cost_per_million_tokens is not None:
            self._usage.cost_per_million_tokens = cost_per_million_tokens

    def add_rate_limit_listener(self, listener: RateLimitListener) -> Callable[[], None]:
        return self._rate_limiter.add_listener(listener)

    # -- usage -----------------------------------------------------------

    def get_usage_stats(self) -> UsageStats:
        requests, tokens = self._rate_limiter.current_usage()
        return self._usage.snapshot(current_rpm=requests, current_tpm=tokens)

    def reset_usage_stats(self, cumulative: bool = False) -> None:
        self._usage.reset(cumulative=cumulative)
        self._rate_limiter.reset()

    # -- embedding -------------------------------------------------------

    def embed_batch(self, texts: Sequence[str]) -> List[Tuple[float, ...]]:
        """Return one vector per input text, same order and length."""

        if not texts:
            return []
        with self._lock:
            config = self._config
            provider = self._provider
        if not self.is_configured:
            raise EmbeddingAPIError("Embedding API base or model not configured", ErrorKind.CONFIG)
        vectors: List[Tuple[float, ...]] = []
        step = max(config.max_batch_size, 1)
        for start in range(0, len(texts), step):
            group = list(texts[start : start + step])
            vectors.extend(self._call_with_retries(provider, config, group))
        return vectors

    def embed_query(self, text: str) -> Tuple[float, ...]:
        return self.embed_batch([text])[0]

    def embed(self, text: str, language: str = "auto") -> EmbeddingResult:
        vector = self.embed_query(text)
        resolved: Language = language if language in ("zh", "en") else detect_language(text)  # type: ignore[assignment]
        return EmbeddingResult(vector=vector, language=resolved, dimensions=len(vector))

    def test_connection(self) -> ConnectionTestResult:
        try:
            vector = self.embed_query(_CONNECTION_PROBE)
        except EmbeddingAPIError as exc:
            return ConnectionTestResult(
                success=False,
                message=exc.user_message(),
                provider=self._provider.name,
            )
        return ConnectionTestResult(
            success=True,
            message=f"Connected to {self._provider.name}, {len(vector)} dimensions",
            provider=self._provider.name,
            dimensions=len(vector),
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _call_with_retries(
        self,
        provider: EmbeddingProvider,
        config: EmbeddingConfig,
        texts: List[str],
    ) -> List[Tuple[float, ...]]:
        estimated = sum(estimate_tokens(text) for text in texts)
        attempts = max(config.max_retries, 1)
        last_error: EmbeddingAPIError | None = None
        for attempt in range(attempts):
            if provider.remote:
                self._rate_limiter.acquire(estimated)
            started = time.perf_counter()
            try:
                response = provider.embed(texts)
                vectors = self._validate(response.vectors, len(texts))
            except Exception as exc:  # noqa: BLE001 - classified and re-raised below
                last_error = classify_error(exc)
            else:
                tokens = response.tokens if response.tokens is not None else estimated
                duration = time.perf_counter() - started
                self._usage.record_request(tokens, len(texts))
                if provider.remote:
                    self._rate_limiter.record(tokens)
                self._remember_dimensions(len(vectors[0]), config)
                PipelineMetrics.observe_embedding(duration, tokens)
                self._logger.debug(
                    "embedding.request",
                    provider=provider.name,
                    texts=len(texts),
                    tokens=tokens,
                    duration_seconds=duration,
                )
                return vectors

            PipelineMetrics.observe_embedding_error(last_error.kind.value)
            self._logger.warning(
                "embedding.request.failed",
                provider=provider.name,
                attempt=attempt + 1,
                max_attempts=attempts,
                kind=last_error.kind.value,
                error=str(last_error),
            )
            if not last_error.retryable:
                raise last_error
            if last_error.kind is ErrorKind.RATE_LIMIT:
                if self._rate_limiter.limits[2] == "fail":
                    self._rate_limiter.notify(
                        "provider returned 429",
                        last_error.retry_after_seconds or DEFAULT_RETRY_AFTER_SECONDS,
                    )
                    raise last_error
                self._rate_limiter.wait(
                    last_error.retry_after_seconds or DEFAULT_RETRY_AFTER_SECONDS,
                    "provider returned 429",
                )
                continue
            if attempt < attempts - 1:
                self._sleep(float(2**attempt))

        assert last_error is not None
        self._logger.error("embedding.retries.exhausted", kind=last_error.kind.value, error=str(last_error))
        raise last_error

    @staticmethod
    def _validate(vectors: List[Tuple[float, ...]], expected: int) -> List[Tuple[float, ...]]:
        if len(vectors) != expected:
            raise EmbeddingAPIError(
                f"Provider returned {len(vectors)} vectors for {expected} texts",
                ErrorKind.INVALID_REQUEST,
            )
        widths = {len(vector) for vector in vectors}
        if len(widths) != 1 or 0 in widths:
            raise EmbeddingAPIError("Provider returned vectors of inconsistent width", ErrorKind.INVALID_REQUEST)
        return vectors

    def _remember_dimensions(self, width: int, config: EmbeddingConfig) -> None:
        if self._detected_dimensions == width:
            return
        self._detected_dimensions = width
        if config.dimensions and config.dimensions != width:
            self._logger.warning("embedding.dimensions.differ", configured=config.dimensions, actual=width)
        else:
            self._logger.info("embedding.dimensions.detected", dimensions=width)

    def _on_rate_limited(self, reason: str, wait_seconds: float) -> None:
        self._usage.record_rate_limit_hit()
        PipelineMetrics.observe_rate_limit()

    def _build_provider(self, config: EmbeddingConfig) -> EmbeddingProvider:
        kind = resolve_provider(config.provider, config.api_base)
        if kind == "hash":
            return HashEmbeddingProvider(config.dimensions or 64)
        if kind == "ollama":
            return OllamaProvider(
                self._client,
                api_base=config.api_base,
                model=config.model,
                api_key=config.api_key,
                timeout=config.timeout_seconds,
            )
        return OpenAICompatibleProvider(
            self._client,
            api_base=config.api_base,
            model=config.model,
            api_key=config.api_key,
            dimensions=config.dimensions,
            name=kind,
            timeout=config.timeout_seconds,
        )


__all__ = [
    "ConnectionTestResult",
    "EmbeddingConfig",
    "EmbeddingResult",
    "EmbeddingService",
    "classify_error",
]
