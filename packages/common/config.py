"""
Application configuration using Pydantic Settings
Reads from environment variables and .env file
"""
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
        protected_namespaces=(),
    )

    # Database
    db_user: str = Field(default="spendwise", alias="DB_USER")
    db_password: str = Field(default="", alias="DB_PASSWORD")
    db_name: str = Field(default="spendwise", alias="DB_NAME")
    db_host: str = Field(default="postgres", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")
    database_url_override: Optional[str] = Field(default=None, alias="DATABASE_URL")

    @property
    def database_url(self) -> str:
        """Construct database URL"""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Redis / Celery
    redis_url: str = Field(default="redis://redis:6379/0", alias="REDIS_URL")
    celery_broker_url: str = Field(default="redis://redis:6379/1", alias="CELERY_BROKER_URL")
    celery_result_backend: str = Field(default="redis://redis:6379/2", alias="CELERY_RESULT_BACKEND")

    # Application
    environment: str = Field(default="production", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Categorization models
    ml_model_path: str = Field(default="/srv/spendwise/models", alias="ML_MODEL_PATH")
    training_backend: str = Field(default="local", alias="TRAINING_BACKEND")
    model_generations_retained: int = Field(default=2, ge=1, alias="MODEL_GENERATIONS_RETAINED")
    training_lock_ttl_seconds: int = Field(default=900, ge=1, alias="TRAINING_LOCK_TTL_SECONDS")
    training_random_seed: int = Field(default=42, alias="TRAINING_RANDOM_SEED")

    # Monitoring
    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED")

    # Development
    debug: bool = Field(default=False, alias="DEBUG")

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
        valid_envs = ["development", "staging", "production", "test"]
        if v.lower() not in valid_envs:
            raise ValueError(f"ENVIRONMENT must be one of {valid_envs}")
        return v.lower()

    @validator("training_backend")
    def validate_training_backend(cls, v):
        """Validate training dispatch backend"""
        valid_backends = ["local", "celery"]
        if v.lower() not in valid_backends:
            raise ValueError(f"TRAINING_BACKEND must be one of {valid_backends}")
        return v.lower()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
