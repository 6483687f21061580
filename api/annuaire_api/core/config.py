from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "annuaire-sync-api"
    environment: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    api_key_header: str = "X-API-Key"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    task_max_attempts: int = 5
    task_retry_base_seconds: int = 120
    task_retry_max_seconds: int = 3600
    task_liveness_timeout_seconds: int = 600
    reconciliation_hour_utc: int = 2
    scheduler_lock_stale_seconds: int = 21600
    reconciliation_batch_size: int = 500
    indicator_deadline_day: int = 10
    operator_id: str = "UNKNOWN"
    machine_credentials_json: str | None = None
    otel_enabled: bool = True
    otel_service_name: str = "annuaire-sync-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="ANN_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
