"""
Application configuration using Pydantic Settings
Reads from environment variables and .env file
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Database (receipt store + predictions audit table)
    db_user: str = Field(default="receipts_admin", alias="DB_USER")
    db_password: str = Field(default="", alias="DB_PASSWORD")
    db_name: str = Field(default="receipts", alias="DB_NAME")
    db_host: str = Field(default="postgres", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")

    @property
    def database_url(self) -> str:
        """Construct database URL"""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Redis / Celery
    celery_broker_url: str = Field(default="redis://redis:6379/1", alias="CELERY_BROKER_URL")
    celery_result_backend: str = Field(default="redis://redis:6379/2", alias="CELERY_RESULT_BACKEND")

    # Application
    environment: str = Field(default="production", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # LLM classifier (Anthropic)
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    llm_enabled: bool = Field(default=True, alias="LLM_ENABLED")
    llm_model: str = Field(default="claude-sonnet-4-5", alias="LLM_MODEL")
    llm_timeout_seconds: float = Field(default=8.0, gt=0, alias="LLM_TIMEOUT_SECONDS")
    llm_max_tokens: int = Field(default=256, gt=0, alias="LLM_MAX_TOKENS")
    llm_confidence_ceiling: float = Field(default=0.85, alias="LLM_CONFIDENCE_CEILING")
    # Call the LLM even when a rule is confident (audit-only shadow evaluation)
    llm_always_evaluate: bool = Field(default=False, alias="LLM_ALWAYS_EVALUATE")

    # Rules engine
    rules_confidence_threshold: float = Field(default=0.75, ge=0.0, le=1.0, alias="RULES_CONFIDENCE_THRESHOLD")
    rules_json: Optional[str] = Field(default=None, alias="RULES_JSON")
    rules_file: Optional[str] = Field(default=None, alias="RULES_FILE")

    # Batch categorization
    categorize_batch_size: int = Field(default=100, ge=1, le=1000, alias="CATEGORIZE_BATCH_SIZE")

    # Monitoring
    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment"""
        valid_envs = ["development", "staging", "production"]
        if v.lower() not in valid_envs:
            raise ValueError(f"ENVIRONMENT must be one of {valid_envs}")
        return v.lower()

    @field_validator("llm_confidence_ceiling")
    @classmethod
    def validate_confidence_ceiling(cls, v):
        """LLM self-reported confidence is capped; the cap itself must stay in a sane band"""
        if not 0.5 <= v <= 0.95:
            raise ValueError("LLM_CONFIDENCE_CEILING must be between 0.5 and 0.95")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
