from __future__ import annotations

from ragdesk.config import Settings, get_settings


def test_defaults_cover_segmentation_cache_and_usage():
    settings = get_settings({"environment": "test"})
    assert settings.environment == "test"
    assert (settings.chunk_size, settings.chunk_overlap, settings.min_chunk_chars) == (1000, 200, 50)
    assert settings.cache_similarity_threshold == 0.95
    assert settings.cache_ttl_seconds == 3600
    assert settings.daily_message_limit == 25
    assert settings.retrieval_top_k == 5


def test_breaker_configs_are_named_per_dependency():
    settings = Settings(generation_timeout_seconds=20.0, breaker_error_threshold_percentage=40.0)

    assert settings.embedding_breaker.name == "embedding"
    assert settings.vector_breaker.name == "vector-index"
    generation = settings.generation_breaker
    assert generation.name == "generation"
    assert generation.timeout_seconds == 20.0
    assert generation.error_threshold_percentage == 40.0
    assert generation.volume_threshold == 3


def test_allowed_media_types_accepts_comma_separated_env(monkeypatch):
    monkeypatch.setenv("RAGDESK_ALLOWED_MEDIA_TYPES", "text/plain, text/markdown")
    settings = Settings()
    assert settings.allowed_media_types_tuple == ("text/plain", "text/markdown")
