"""Runtime configuration for the refsearch services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="refsearch_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    data_dir: Path = Path("./data")

    # Vector store
    db_path: Path | None = None
    quantize_vectors: bool = False
    search_batch_size: int = 5000

    # Embedding provider (OpenAI-compatible by default)
    embedding_api_base: str = "https://api.openai.com/v1"
    embedding_api_key: str = ""
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int | None = 512
    embedding_provider: Literal["auto", "openai", "ollama", "ollama-openai", "hash"] = "auto"
    embedding_max_batch_size: int = 100
    embedding_timeout_seconds: float = 30.0
    embedding_max_retries: int = 3

    # Rate limiting and cost governance
    rate_limit_rpm: int = 60  # 0 means unlimited
    rate_limit_tpm: int = 150_000  # 0 means unlimited
    rate_limit_mode: Literal["wait", "fail"] = "wait"
    cost_per_million_tokens: float = 0.02
    usage_stats_path: Path | None = None

    # Chunking
    chunk_size: int = 450
    chunk_overlap: int = 50
    min_chunk_size: int = 20
    language_hint: Literal["auto", "zh", "en"] = "auto"

    # Search defaults
    default_top_k: int = 10
    default_min_score: float = 0.1

    # Index job
    job_state_path: Path | None = None
    autoupdate_enabled: bool = False
    autoupdate_debounce_seconds: float = 5.0

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def resolved_db_path(self) -> Path:
        return self.db_path or self.data_dir / "vectors.sqlite"

    @property
    def resolved_usage_stats_path(self) -> Path:
        return self.usage_stats_path or self.data_dir / "usage_stats.json"

    @property
    def resolved_job_state_path(self) -> Path:
        return self.job_state_path or self.data_dir / "index_job.json"


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
