from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "crm-access"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 50
    database_pool_max_size: int = 100
    database_acquire_timeout_seconds: float | None = None
    database_command_timeout_seconds: float = 15.0
    query_max_retries: int = 3
    query_retry_base_seconds: float = 1.0
    page_limit_manager: int = 5000
    page_limit_team_leader: int = 1000
    page_limit_salesman: int = 200
    max_page_offset: int = 1_000_000
    export_max_rows: int = 5000
    otel_enabled: bool = True
    otel_service_name: str = "crm-access"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CRM_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
