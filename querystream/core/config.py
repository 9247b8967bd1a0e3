"""
Configuration Management

Centralized configuration using Pydantic Settings.
"""

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application
    app_name: str = "querystream"
    app_version: str = "1.0.0"
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    # Database
    database_url: str = Field(..., min_length=1)
    pool_min_size: int = Field(default=1, ge=0)
    pool_max_size: int = Field(default=10, ge=1)
    pool_acquire_timeout: float = Field(default=30.0, gt=0, description="Seconds to wait for a free connection")

    # Streaming
    batch_size: int = Field(default=1, ge=1, description="Rows per batch record")
    fetch_size: int = Field(default=2000, ge=1, description="Rows per server round trip")
    gzip_level: int = Field(default=6, ge=0, le=9)

    # CORS
    cors_origins: List[str] = ["*"]


@lru_cache()
def get_settings() -> Settings:
    """Load settings from the environment once per process."""
    return Settings()
