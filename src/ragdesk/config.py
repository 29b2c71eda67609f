"""Runtime configuration for the ragdesk services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from ragdesk.resilience.breaker import CircuitBreakerConfig


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="ragdesk_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    upload_dir: Path = Path("./uploads")

    # Segmentation (characters)
    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_chunk_chars: int = 50

    # Embeddings
    embedding_provider: Literal["hash", "openai", "huggingface"] = "hash"
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = 768
    embedding_batch_size: int = 5
    embedding_batch_delay_ms: int = 300
    openai_api_key: str | None = None

    # Vector index
    chroma_persist_dir: Path = Path("./.chroma")
    chroma_collection: str = "rag-documents"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False

    # Generation
    generator_provider: Literal["template", "openai"] = "template"
    generator_model: str = "gpt-4o-mini"
    generator_temperature: float = 0.3
    generator_max_tokens: int = 1024

    # Retrieval
    retrieval_top_k: int = 5
    citation_preview_chars: int = 200

    # Semantic cache
    cache_ttl_seconds: int = 3600
    cache_similarity_threshold: float = 0.95

    # Usage ledger
    daily_message_limit: int = 25

    # Backing stores
    redis_url: str = "redis://localhost:6379/0"
    database_url: str = "sqlite+aiosqlite:///./ragdesk.db"

    # Upload safety
    allowed_media_types: tuple[str, ...] | str = (
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "text/plain",
        "text/markdown",
    )
    max_upload_size_mb: int = 10

    # Circuit breakers
    breaker_error_threshold_percentage: float = 50.0
    breaker_rolling_window_seconds: float = 10.0
    breaker_rolling_buckets: int = 10
    embedding_timeout_seconds: float = 10.0
    embedding_reset_seconds: float = 30.0
    embedding_volume_threshold: int = 5
    generation_timeout_seconds: float = 15.0
    generation_reset_seconds: float = 30.0
    generation_volume_threshold: int = 3
    vector_timeout_seconds: float = 5.0
    vector_reset_seconds: float = 20.0
    vector_volume_threshold: int = 5

    @property
    def allowed_media_types_tuple(self) -> tuple[str, ...]:
        value = self.allowed_media_types
        if isinstance(value, tuple):
            return value
        if isinstance(value, str):
            parts = [p.strip() for p in value.split(",") if p.strip()]
            if parts:
                return tuple(parts)
        return ("application/pdf", "text/plain", "text/markdown")

    @property
    def embedding_breaker(self) -> CircuitBreakerConfig:
        return self._breaker(
            "embedding",
            self.embedding_timeout_seconds,
            self.embedding_reset_seconds,
            self.embedding_volume_threshold,
        )

    @property
    def generation_breaker(self) -> CircuitBreakerConfig:
        return self._breaker(
            "generation",
            self.generation_timeout_seconds,
            self.generation_reset_seconds,
            self.generation_volume_threshold,
        )

    @property
    def vector_breaker(self) -> CircuitBreakerConfig:
        return self._breaker(
            "vector-index",
            self.vector_timeout_seconds,
            self.vector_reset_seconds,
            self.vector_volume_threshold,
        )

    def _breaker(self, name: str, timeout: float, reset: float, volume: int) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            name=name,
            timeout_seconds=timeout,
            error_threshold_percentage=self.breaker_error_threshold_percentage,
            reset_timeout_seconds=reset,
            rolling_window_seconds=self.breaker_rolling_window_seconds,
            rolling_buckets=self.breaker_rolling_buckets,
            volume_threshold=volume,
        )


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
