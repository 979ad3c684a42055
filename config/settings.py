"""
Centralized configuration for the prediction session worker.

All configuration values are defined here. In production, sensitive values
come from the deployment's secret store. Locally, they come from .env file.
"""
from pathlib import Path
from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=True, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # ==========================================================================
    # API KEYS
    # ==========================================================================
    openrouter_api_key: str = Field(default="", alias="OPENROUTER_API_KEY")
    exa_api_key: str = Field(default="", alias="EXA_API_KEY")
    perplexity_api_key: str = Field(default="", alias="PERPLEXITY_KEY")

    # ==========================================================================
    # DATABASE
    # ==========================================================================
    database_url: str = Field(
        default="sqlite:///./data/predictions.db",
        alias="DATABASE_URL"
    )

    # ==========================================================================
    # MODELS
    # ==========================================================================
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        alias="OPENROUTER_BASE_URL"
    )
    default_model: str = Field(default="openai/gpt-4o-mini", alias="DEFAULT_MODEL")
    grok_model: str = Field(default="x-ai/grok-4", alias="GROK_MODEL")
    search_model: str = Field(default="sonar", alias="SEARCH_MODEL")

    # ==========================================================================
    # RESEARCH CACHE
    # ==========================================================================
    research_cache_max_age_hours: float = Field(default=12.0, alias="RESEARCH_CACHE_MAX_AGE_HOURS")

    # ==========================================================================
    # RATE LIMITS (seconds between API calls)
    # ==========================================================================
    research_rate_limit_delay: float = Field(default=0.5, alias="RESEARCH_RATE_LIMIT_DELAY")
    model_rate_limit_delay: float = Field(default=1.0, alias="MODEL_RATE_LIMIT_DELAY")
    request_timeout: int = Field(default=90, alias="REQUEST_TIMEOUT")

    # ==========================================================================
    # WORKER
    # ==========================================================================
    model_pool_size: int = Field(default=3, alias="MODEL_POOL_SIZE")  # clamped to 2..4
    worker_max_attempts: int = Field(default=3, alias="WORKER_MAX_ATTEMPTS")
    worker_backoff_base_seconds: float = Field(default=1.0, alias="WORKER_BACKOFF_BASE_SECONDS")  # 2s, 4s, 8s

    # ==========================================================================
    # RECOVERY
    # ==========================================================================
    recovery_timeout_minutes: int = Field(default=10, alias="RECOVERY_TIMEOUT_MINUTES")
    recovery_batch_size: int = Field(default=20, alias="RECOVERY_BATCH_SIZE")
    recovery_max_attempts: int = Field(default=2, alias="RECOVERY_MAX_ATTEMPTS")
    cleanup_hours_old: int = Field(default=24, alias="CLEANUP_HOURS_OLD")

    # ==========================================================================
    # CREDITS
    # ==========================================================================
    daily_credit_reset: int = Field(default=100, alias="DAILY_CREDIT_RESET")
    low_credit_threshold: int = Field(default=10, alias="LOW_CREDIT_THRESHOLD")
    signup_bonus_credits: int = Field(default=100, alias="SIGNUP_BONUS_CREDITS")

    # ==========================================================================
    # PATHS
    # ==========================================================================
    @property
    def project_root(self) -> Path:
        """Get the project root directory."""
        return Path(__file__).parent.parent

    @property
    def data_dir(self) -> Path:
        """Get the data directory."""
        return self.project_root / "data"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
