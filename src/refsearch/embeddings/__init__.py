"""Embedding services."""

from .providers import (
    EmbeddingProvider,
    HashEmbeddingProvider,
    OllamaProvider,
    OpenAICompatibleProvider,
    detect_provider,
    embedding_endpoint,
)
from .ratelimit import SlidingWindowRateLimiter
from .service import ConnectionTestResult, EmbeddingConfig, EmbeddingResult, EmbeddingService, classify_error
from .usage import UsageStats, UsageTracker

__all__ = [
    "ConnectionTestResult",
    "EmbeddingConfig",
    "EmbeddingProvider",
    "EmbeddingResult",
    "EmbeddingService",
    "HashEmbeddingProvider",
    "OllamaProvider",
    "OpenAICompatibleProvider",
    "SlidingWindowRateLimiter",
    "UsageStats",
    "UsageTracker",
    "classify_error",
    "detect_provider",
    "embedding_endpoint",
]
