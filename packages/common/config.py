"""
Application configuration using Pydantic Settings
Reads from environment variables and .env file

One Settings object is built at process start and handed to every service
constructor (cache, governor, cascade, prediction engine).
"""
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
        protected_namespaces=("settings_",),
    )

    # Database
    db_user: str = Field(default="restock", alias="DB_USER")
    db_password: str = Field(default="", alias="DB_PASSWORD")
    db_name: str = Field(default="restock", alias="DB_NAME")
    db_host: str = Field(default="postgres", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")

    @property
    def database_url(self) -> str:
        """Construct database URL"""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Durable key-value store backend: "postgres" or "memory"
    kv_store_backend: str = Field(default="postgres", alias="KV_STORE_BACKEND")

    # Redis / Celery
    celery_broker_url: str = Field(default="redis://redis:6379/1", alias="CELERY_BROKER_URL")
    celery_result_backend: str = Field(default="redis://redis:6379/2", alias="CELERY_RESULT_BACKEND")
    prediction_job_hour_utc: int = Field(default=2, ge=0, le=23, alias="PREDICTION_JOB_HOUR_UTC")

    # Application
    environment: str = Field(default="production", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # External inventory stores (dotted path "module:attribute" to a factory or class)
    inventory_repository: str = Field(
        default="packages.common.inventory_repository:InMemoryInventoryRepository",
        alias="INVENTORY_REPOSITORY",
    )

    # Language model (structured generation)
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    model_name: str = Field(default="claude-haiku-4-5", alias="MODEL_NAME")
    model_max_output_tokens: int = Field(default=256, gt=0, alias="MODEL_MAX_OUTPUT_TOKENS")
    model_temperature: float = Field(default=0.1, ge=0.0, le=1.0, alias="MODEL_TEMPERATURE")
    model_timeout_seconds: float = Field(default=30.0, gt=0, alias="MODEL_TIMEOUT_SECONDS")

    # LLM budget ceilings (USD)
    user_monthly_cap: Decimal = Field(default=Decimal("0.20"), ge=0, alias="LLM_COST_PER_USER_MONTHLY")
    system_daily_cap: Decimal = Field(default=Decimal("50.00"), ge=0, alias="LLM_COST_SYSTEM_DAILY")
    cost_per_1k_input_tokens: Decimal = Field(default=Decimal("0.001"), ge=0, alias="LLM_COST_PER_1K_INPUT_TOKENS")
    cost_per_1k_output_tokens: Decimal = Field(default=Decimal("0.005"), ge=0, alias="LLM_COST_PER_1K_OUTPUT_TOKENS")

    # Normalization cache
    cache_memory_capacity: int = Field(default=1000, gt=0, alias="CACHE_MEMORY_CAPACITY")
    cache_ttl_days: int = Field(default=90, gt=0, alias="CACHE_TTL_DAYS")
    cache_write_threshold: float = Field(default=0.9, ge=0.0, le=1.0, alias="CACHE_WRITE_THRESHOLD")
    background_queue_size: int = Field(default=256, gt=0, alias="BACKGROUND_QUEUE_SIZE")

    @property
    def cache_ttl_seconds(self) -> int:
        return self.cache_ttl_days * 24 * 60 * 60

    # Parsing / review
    rule_confidence: float = Field(default=0.9, ge=0.0, le=1.0, alias="RULE_CONFIDENCE")
    fallback_confidence: float = Field(default=0.1, ge=0.0, le=1.0, alias="FALLBACK_CONFIDENCE")
    review_confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0, alias="REVIEW_CONFIDENCE_THRESHOLD")
    ambiguous_confidence_cap: float = Field(default=0.7, ge=0.0, le=1.0, alias="AMBIGUOUS_CONFIDENCE_CAP")
    parse_worker_concurrency: int = Field(default=8, gt=0, alias="PARSE_WORKER_CONCURRENCY")

    # Prediction engine
    smoothing_alpha: float = Field(default=0.3, gt=0.0, le=1.0, alias="PREDICTION_SMOOTHING_ALPHA")
    outlier_z_threshold: float = Field(default=2.0, gt=0.0, alias="PREDICTION_OUTLIER_Z_THRESHOLD")
    recent_purchase_days: int = Field(default=30, gt=0, alias="PREDICTION_RECENT_DAYS")
    running_out_soon_days: int = Field(default=7, gt=0, alias="PREDICTION_RUNNING_OUT_DAYS")

    @validator("log_level")
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @validator("environment")
    def validate_environment(cls, v):
        """Validate environment"""
        valid_envs = ["development", "test", "staging", "production"]
        if v.lower() not in valid_envs:
            raise ValueError(f"ENVIRONMENT must be one of {valid_envs}")
        return v.lower()

    @validator("kv_store_backend")
    def validate_kv_store_backend(cls, v):
        """Validate key-value store backend"""
        if v.lower() not in ("postgres", "memory"):
            raise ValueError("KV_STORE_BACKEND must be 'postgres' or 'memory'")
        return v.lower()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
