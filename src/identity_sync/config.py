from functools import lru_cache
import json
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core API Settings
    api_host: str = Field("0.0.0.0", alias="API_HOST")
    api_port: int = Field(8000, alias="API_PORT")
    environment: str = Field("development", alias="ENVIRONMENT")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    app_env: str = Field("dev", alias="APP_ENV")
    ingest_secret: str | None = Field(None, alias="INGEST_SECRET")

    # Database: explicit DSN wins, then Supabase, then local sqlite
    database_url: str | None = Field(None, alias="DATABASE_URL")
    supabase_project_ref: str | None = Field(None, alias="SUPABASE_PROJECT_REF")
    supabase_db_password: str | None = Field(None, alias="SUPABASE_DB_PASSWORD")
    supabase_db_user: str = Field("postgres", alias="SUPABASE_DB_USER")
    supabase_db_name: str = Field("postgres", alias="SUPABASE_DB_NAME")
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")

    # Ingestion limits
    dedupe_bucket_seconds: int = Field(300, alias="DEDUPE_BUCKET_SECONDS")
    max_properties_bytes: int = Field(50_000, alias="MAX_PROPERTIES_BYTES")
    max_context_bytes: int = Field(20_000, alias="MAX_CONTEXT_BYTES")
    max_nesting_depth: int = Field(10, alias="MAX_NESTING_DEPTH")
    max_bulk_events: int = Field(500, alias="MAX_BULK_EVENTS")
    stale_event_minutes: int = Field(10, alias="STALE_EVENT_MINUTES")

    # Sync queue
    sync_max_attempts: int = Field(3, alias="SYNC_MAX_ATTEMPTS")
    sync_lease_seconds: int = Field(120, alias="SYNC_LEASE_SECONDS")
    sync_backoff_base_seconds: int = Field(60, alias="SYNC_BACKOFF_BASE_SECONDS")  # 2^attempts minutes
    sync_backoff_max_seconds: int = Field(3600, alias="SYNC_BACKOFF_MAX_SECONDS")
    sync_default_retry_after: int = Field(60, alias="SYNC_DEFAULT_RETRY_AFTER")
    sync_worker_threads: int = Field(4, alias="SYNC_WORKER_THREADS")
    sync_poll_interval_seconds: float = Field(1.0, alias="SYNC_POLL_INTERVAL_SECONDS")
    destination_default_concurrency: int = Field(2, alias="DESTINATION_DEFAULT_CONCURRENCY")
    destination_rate_per_second: float = Field(10.0, alias="DESTINATION_RATE_PER_SECOND")
    destination_timeout_seconds: float = Field(15.0, alias="DESTINATION_TIMEOUT_SECONDS")

    # Versioned policies (JSON); empty means built-in defaults
    scoring_policy: str | None = Field(None, alias="SCORING_POLICY")
    blocked_event_patterns: str | None = Field(None, alias="BLOCKED_EVENT_PATTERNS")  # JSON {"version":..,"patterns":[..]} or comma list
    blocked_events_version: str = Field("2024-01", alias="BLOCKED_EVENTS_VERSION")
    recompute_sweep_minutes: int = Field(60, alias="RECOMPUTE_SWEEP_MINUTES")
    recompute_sweep_batch: int = Field(500, alias="RECOMPUTE_SWEEP_BATCH")

    klaviyo_api_base: str = Field("https://a.klaviyo.com/api", alias="KLAVIYO_API_BASE")
    klaviyo_revision: str = Field("2024-02-15", alias="KLAVIYO_REVISION")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"  # Allow extra environment variables


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()


def parse_json_object(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def parse_pattern_list(raw: str | None) -> tuple[str | None, list[str]]:
    """Return (version, patterns) from either JSON or a comma separated list."""
    if not raw:
        return None, []
    raw = raw.strip()
    if raw.startswith("{") or raw.startswith("["):
        try:
            data = json.loads(raw)
        except ValueError:
            return None, []
        if isinstance(data, list):
            return None, [str(p) for p in data if str(p).strip()]
        if isinstance(data, dict):
            return data.get("version"), [str(p) for p in data.get("patterns", []) if str(p).strip()]
        return None, []
    return None, [p.strip() for p in raw.split(",") if p.strip()]


def is_test_env() -> bool:
    return get_settings().app_env == "test"
