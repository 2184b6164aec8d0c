"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SQUARE_BASE_URLS = {
    "sandbox": "https://connect.squareupsandbox.com",
    "production": "https://connect.squareup.com",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./proofpay.db",
        description="Async SQLAlchemy connection URL",
    )
    database_pool_size: int = Field(default=10, description="Database connection pool size")
    database_max_overflow: int = Field(default=20, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="proofpay-api", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=True, description="Render logs as JSON")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=4000, description="API port")
    allowed_origins: str = Field(default="*", description="CORS allowed origins (comma-separated)")

    # Share tokens
    web_app_url: str = Field(
        default="http://localhost:3000", description="Base URL of the verification web app"
    )
    share_token_length: int = Field(default=16, ge=8, description="Share token length")
    share_token_max_attempts: int = Field(
        default=5, ge=1, description="Attempts to find a non-colliding share token"
    )
    share_reuse_existing: bool = Field(
        default=True, description="Reuse a receipt's existing non-expiring share token"
    )

    # Administrative defaults (used when the settings table has no value)
    qr_single_use_default: bool = Field(default=False, description="Issue single-use tokens")
    confidence_threshold_default: int = Field(
        default=85, description="Minimum confidence score for item visibility"
    )
    receipts_enabled_default: bool = Field(default=True, description="Receipts feature toggle")
    kill_switch_default: bool = Field(default=False, description="Master kill switch")
    retention_days_default: int = Field(default=90, description="Receipt retention in days")

    # Square Configuration
    square_access_token: Optional[str] = Field(default=None, description="Square access token")
    square_environment: str = Field(default="sandbox", description="sandbox or production")
    square_api_version: str = Field(default="2024-01-18", description="Square-Version header")
    square_webhook_signature_key: Optional[str] = Field(
        default=None, description="Square webhook signature key (enables verification)"
    )
    square_webhook_url: Optional[str] = Field(
        default=None, description="Notification URL registered with Square"
    )
    upstream_timeout_seconds: float = Field(default=10.0, description="Square HTTP timeout")
    upstream_retry_max_attempts: int = Field(
        default=3, ge=1, description="Max attempts for transient Square errors"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("square_environment")
    @classmethod
    def validate_square_environment(cls, v: str) -> str:
        """Validate Square environment name."""
        if v.lower() not in SQUARE_BASE_URLS:
            raise ValueError(f"Invalid Square environment. Must be one of: {list(SQUARE_BASE_URLS)}")
        return v.lower()

    @field_validator("confidence_threshold_default")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("confidence_threshold_default must be between 0 and 100")
        return v

    @field_validator("retention_days_default")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        if not 1 <= v <= 3650:
            raise ValueError("retention_days_default must be between 1 and 3650")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def square_base_url(self) -> str:
        return SQUARE_BASE_URLS[self.square_environment]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
