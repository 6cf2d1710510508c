from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "stackroll-ops-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    admin_api_key_sha256: str | None = None

    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    claim_batch_size: int = 100
    poll_interval_seconds: float = 10.0
    max_backoff_seconds: float = 60.0
    max_active_jobs: int = 20
    max_consecutive_errors: int = 10
    give_up_after_attempts: int = 5
    lease_stale_after_seconds: int = 900
    lease_reaper_interval_seconds: float = 60.0
    lease_reaper_batch_size: int = 100

    s3_bucket_reports: str = "stackroll-reports"
    s3_region: str = "us-east-1"
    s3_endpoint_url: str | None = None
    s3_report_prefix: str = "reports"
    s3_inbox_prefix: str = "queue"
    s3_rejected_prefix: str = "rejected"
    report_read_concurrency: int = 8

    inbox_routing_enabled: bool = False
    inbox_poll_interval_seconds: float = 30.0
    inbox_batch_size: int = 50

    search_url: str = "http://localhost:9200"
    search_index: str = "dev_profiles"
    search_username: str | None = None
    search_password: str | None = None
    search_timeout_seconds: float = 10.0

    owner_id_pattern: str = r"^[A-Za-z0-9][A-Za-z0-9_:.-]{0,199}$"

    otel_enabled: bool = True
    otel_service_name: str = "stackroll"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="STACKROLL_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
