from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

# .env at the project root: trademaster/core/config.py -> core -> trademaster -> root
_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _ROOT / ".env"


class Settings(BaseSettings):
    # OpenRouter speaks the OpenAI API; several keys may be given comma-separated
    openrouter_api_key: str = ""
    openrouter_api_keys: str = ""
    ai_base_url: str = "https://openrouter.ai/api/v1"
    ai_model: str = "qwen/qwen-2.5-72b-instruct"
    ai_model_label: str = "qwen3"
    ai_analysis_version: str = "1.0"
    ai_timeout_seconds: float = 30.0
    ai_app_url: str = "https://trademaster.ai"
    ai_app_title: str = "TradeMaster AI"

    database_url: str = "sqlite:///./trademaster.db"
    redis_url: str = "redis://127.0.0.1:6379/0"
    queue_name: str = "ai-analysis"

    # Worker pool
    worker_concurrency: int = 2
    worker_rate_limit_max: int = 10
    worker_rate_limit_window_seconds: int = 60
    # memory:// is per process; redis://... shares the window across worker processes
    worker_rate_limit_storage_uri: str = "memory://"
    worker_poll_interval_seconds: float = 1.0
    job_max_attempts: int = 3
    job_backoff_base_ms: int = 2000
    job_stall_threshold_seconds: int = 120
    job_keep_completed: int = 100
    job_keep_failed: int = 50

    # Executor
    analysis_reuse_window_minutes: int = 60

    # Sweeps
    sweep_analysis_interval_minutes: int = 30
    sweep_analysis_lookback_minutes: int = 35
    sweep_analysis_batch_size: int = 50
    sweep_analysis_stagger_ms: int = 2000
    sweep_cleanup_hour: int = 2
    sweep_cleanup_max_age_days: int = 30
    sweep_job_retention_hours: int = 24
    sweep_stats_interval_minutes: int = 60
    sweep_weekly_insights_day: str = "sun"
    sweep_weekly_insights_hour: int = 6
    sweep_weekly_insights_stagger_ms: int = 5000
    scheduler_timezone: str = "UTC"
    # Normally the worker process owns the schedule; single-process deployments can run it in the API
    api_run_scheduler: bool = False

    # HTTP
    cors_origins: str = "*"
    rate_limit_per_minute: int = 60
    rate_limit_analyze_per_minute: int = 10
    http_rate_limit_storage_uri: str = "memory://"
    admin_secret: str = ""
    environment: str = "development"

    model_config = {
        "env_file": _ENV_FILE if _ENV_FILE.is_file() else ".env",
        "extra": "ignore",
    }

    @field_validator("openrouter_api_key", "openrouter_api_keys", mode="before")
    @classmethod
    def strip_keys(cls, v: str | None) -> str:
        """Strips whitespace picked up when keys are pasted into .env."""
        return (v or "").strip()


settings = Settings()


def get_ai_keys(cfg: Settings | None = None) -> list[str]:
    """
    Returns the usable API keys in rotation order.
    OPENROUTER_API_KEYS (comma-separated) wins; otherwise OPENROUTER_API_KEY alone.
    """
    cfg = cfg or settings
    keys_raw = (cfg.openrouter_api_keys or "").strip()
    if keys_raw:
        keys = [k.strip() for k in keys_raw.split(",") if k.strip()]
        if keys:
            return keys
    single = (cfg.openrouter_api_key or "").strip()
    return [single] if single else []


def is_ai_configured(cfg: Settings | None = None) -> bool:
    return len(get_ai_keys(cfg)) > 0
