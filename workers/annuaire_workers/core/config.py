from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    log_level: str = "INFO"
    api_base_url: str = "http://localhost:8000"
    module_id: str = "local-publisher"
    api_key: str = "local-publisher-key"
    api_key_header: str = "X-API-Key"
    api_timeout_seconds: float = 10.0
    scheduler_timeout_seconds: float = 900.0
    scheduler_interval_seconds: float = 30.0
    concurrency: int = 4
    poll_interval_seconds: float = 2.0
    poll_batch_size: int = 20
    max_backoff_seconds: float = 15.0
    stale_reap_interval_seconds: float = 60.0
    stale_reap_batch_size: int = 100
    maintenance_interval_seconds: float = 300.0
    reconciliation_hour_utc: int = 2
    indicator_aggregation_day: int = 1
    directory_base_url: str = "http://localhost:9000"
    directory_api_key: str | None = None
    directory_timeout_seconds: float = 30.0
    directory_cert_path: str | None = None
    directory_key_path: str | None = None
    directory_ca_path: str | None = None
    operator_id: str = "UNKNOWN"
    otel_enabled: bool = True
    otel_service_name: str = "annuaire-sync-workers"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="ANN_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
