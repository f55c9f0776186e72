"""
Centralized configuration management.
All environment variables and settings are defined here.
"""
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DATA_DIR = Path(__file__).resolve().parent.parent / "data"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Bank Statement Import Service")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    log_level: str = Field(default="INFO")

    # LLM gateway (extraction and classifier services)
    llm_api_key: str = Field(default="")
    llm_gateway_url: str = Field(default="https://ai.gateway.lovable.dev/v1/chat/completions")
    extraction_model: str = Field(default="google/gemini-2.5-pro")
    classifier_model: str = Field(default="google/gemini-2.5-flash")
    llm_timeout: int = Field(default=120)
    llm_verify_ssl: bool = Field(default=True, description="Disable for gateways with self-signed certificates")

    # Extraction batching
    batch_size: int = Field(default=10, description="Data rows per extraction batch (N)")
    max_concurrent_batches: int = Field(default=20, description="Batches in flight per group (K)")
    max_retries: int = Field(default=3)
    retry_base_delay: float = Field(default=2.0)

    # Classifier batching
    classifier_batch_size: int = Field(default=25)
    classifier_concurrency: int = Field(default=3)

    # Storage
    storage_path: str = Field(default="files")
    database_path: str = Field(default="bank_import.db")
    categories_path: str = Field(default=str(DATA_DIR / "categories.json"))
    cascade_rules_path: str = Field(default=str(DATA_DIR / "cascade_rules.json"))
    user_rules_path: Optional[str] = Field(default=None)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one of the standard levels."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v_upper

    @field_validator("port")
    @classmethod
    def validate_port(cls, v):
        """Validate port is in valid range."""
        if not (1 <= v <= 65535):
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("batch_size", "classifier_batch_size")
    @classmethod
    def validate_batch_size(cls, v):
        """Batch sizes must be positive."""
        if v < 1:
            raise ValueError("Batch size must be at least 1")
        return v

    @field_validator("max_concurrent_batches", "classifier_concurrency")
    @classmethod
    def validate_concurrency(cls, v):
        """Validate concurrency setting."""
        if v < 1:
            raise ValueError("Concurrency must be at least 1")
        if v > 50:
            raise ValueError("Concurrency should not exceed 50")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v):
        """Validate retry count."""
        if not (0 <= v <= 10):
            raise ValueError("Max retries must be between 0 and 10")
        return v

    @field_validator("retry_base_delay")
    @classmethod
    def validate_retry_base_delay(cls, v):
        """Backoff base cannot be negative."""
        if v < 0:
            raise ValueError("Retry base delay cannot be negative")
        return v

    def ensure_directories(self) -> None:
        """Ensure required directories exist."""
        Path(self.storage_path).mkdir(parents=True, exist_ok=True)

    @property
    def checkpoint_path(self) -> str:
        """Directory holding paused-run checkpoints."""
        return str(Path(self.storage_path) / "checkpoints")


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings singleton.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.ensure_directories()
    return _settings


def reset_settings() -> None:
    """Reset settings singleton (useful for testing)."""
    global _settings
    _settings = None
