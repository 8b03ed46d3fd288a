"""
Configuration management for FolioOracle.
Uses pydantic-settings for type-safe, centralized configuration.
"""

from datetime import timedelta
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

from exceptions import OracleConfigurationError


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type safety.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore'  # Allow extra fields in .env for flexibility
    )

    # Database
    database_url: str = "sqlite:///folio_oracle.db"
    db_echo: bool = False

    # Oracle (OpenAI-compatible chat model)
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: Optional[str] = None
    oracle_temperature: float = 0.1
    oracle_web_search: bool = True
    oracle_max_retries: int = 3

    # Refresh policy
    metrics_staleness_hours: float = 24.0
    refresh_delay_seconds: float = 1.0
    price_sync_interval_seconds: int = 60
    batch_price_format: Literal["text", "json"] = "text"

    log_level: str = "INFO"

    @property
    def is_oracle_configured(self) -> bool:
        """Check if the market-data oracle can be reached."""
        return bool(self.openai_api_key)

    @property
    def metrics_staleness(self) -> timedelta:
        return timedelta(hours=self.metrics_staleness_hours)

    def require_oracle(self) -> None:
        """Raise if the oracle API key is missing. Call once at startup."""
        if not self.is_oracle_configured:
            raise OracleConfigurationError(
                "Oracle API key not found. Set OPENAI_API_KEY environment variable."
            )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
