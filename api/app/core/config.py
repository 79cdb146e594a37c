from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "demand-dedupe-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_acquire_timeout_seconds: float = 10.0
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    similarity_default_enabled: bool = True
    similarity_default_rule: str = "hybrid"
    similarity_default_threshold: float = 0.85
    candidate_pool_size: int = 200
    check_similar_max_limit: int = 50
    exact_text_lock_enabled: bool = False
    otel_enabled: bool = True
    otel_service_name: str = "demand-dedupe-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="DD_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
