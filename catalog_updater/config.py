from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    shop_domain: str
    access_token: str
    api_version: str
    request_timeout_seconds: float
    max_attempts: int
    retry_backoff_seconds: float
    small_dataset_threshold: int
    medium_dataset_threshold: int
    large_dataset_threshold: int
    small_batch_size: int
    medium_batch_size: int
    large_batch_size: int
    huge_batch_size: int
    inter_batch_delay_seconds: float
    background_threshold: int
    job_retention_seconds: float
    job_cleanup_interval_seconds: float
    job_time_budget_seconds: float
    job_poll_seconds: float
    import_tag: str
    row_repair_enabled: bool
    dry_run_preview_rows: int | None


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "catalog-updater"),
        database_url=os.getenv("DATABASE_URL", "sqlite://"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        shop_domain=os.getenv("SHOP_DOMAIN", ""),
        access_token=os.getenv("ACCESS_TOKEN", ""),
        api_version=os.getenv("API_VERSION", "2024-01"),
        request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30")),
        max_attempts=int(os.getenv("MAX_ATTEMPTS", "3")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "1")),
        small_dataset_threshold=int(os.getenv("SMALL_DATASET_THRESHOLD", "10")),
        medium_dataset_threshold=int(os.getenv("MEDIUM_DATASET_THRESHOLD", "50")),
        large_dataset_threshold=int(os.getenv("LARGE_DATASET_THRESHOLD", "100")),
        small_batch_size=int(os.getenv("SMALL_BATCH_SIZE", "3")),
        medium_batch_size=int(os.getenv("MEDIUM_BATCH_SIZE", "2")),
        large_batch_size=int(os.getenv("LARGE_BATCH_SIZE", "2")),
        huge_batch_size=int(os.getenv("HUGE_BATCH_SIZE", "1")),
        inter_batch_delay_seconds=float(os.getenv("INTER_BATCH_DELAY_SECONDS", "0.05")),
        background_threshold=int(os.getenv("BACKGROUND_THRESHOLD", "50")),
        job_retention_seconds=float(os.getenv("JOB_RETENTION_SECONDS", "3600")),
        job_cleanup_interval_seconds=float(os.getenv("JOB_CLEANUP_INTERVAL_SECONDS", "1800")),
        job_time_budget_seconds=float(os.getenv("JOB_TIME_BUDGET_SECONDS", "300")),
        job_poll_seconds=float(os.getenv("JOB_POLL_SECONDS", "2")),
        import_tag=os.getenv("IMPORT_TAG", "product_csv_import"),
        row_repair_enabled=_env_flag("ROW_REPAIR_ENABLED", "true"),
        dry_run_preview_rows=int(os.getenv("DRY_RUN_PREVIEW_ROWS", "25")) or None,
    )
