"""Application configuration management using Pydantic Settings.

This module provides centralized configuration for the DICOM study catalog
backend, supporting environment variables and .env files for different
deployment environments.
"""

import secrets
import sys
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Get the backend directory (parent of app/ directory)
BACKEND_DIR = Path(__file__).parent.parent.parent
ENV_FILE = BACKEND_DIR / ".env"

# Load environment variables from .env file
load_dotenv(ENV_FILE)


def _generate_dev_secret_key() -> str:
    """Generate a temporary secret key for development ONLY."""
    return f"dev-only-insecure-{secrets.token_hex(24)}"


def _is_insecure_key(key: str) -> bool:
    """Check if the key is insecure (default placeholder or empty)."""
    insecure_patterns = [
        "change-this",
        "your-secret",
        "dev-only",
        "changeme",
        "secret-key-here",
        "placeholder",
    ]
    if not key or len(key) < 32:
        return True
    return any(pattern in key.lower() for pattern in insecure_patterns)


class StorageSettings(BaseSettings):
    """Configuration for the blob store holding DICOM files."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    root_dir: Path = Field(
        default=Path("./storage/blobs"), description="Root directory of the local blob store"
    )
    path_prefix: str = Field(
        default="dicom_files", min_length=1, description="Leading segment of every blob path"
    )
    public_base_url: str = Field(
        default="/api/v1/files", description="Base URL under which blobs are downloadable"
    )
    call_timeout_seconds: float = Field(
        default=10.0, gt=0, le=600, description="Timeout applied to every backend call"
    )


class DatabaseSettings(BaseSettings):
    """Database configuration settings."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    url: str = Field(
        default="sqlite+aiosqlite:///./dicom_catalog.db",
        description="SQLAlchemy async database URL",
    )
    echo: bool = Field(default=False, description="Echo SQL statements")
    pool_size: int = Field(default=10, ge=1, le=100, description="Connection pool size")
    max_overflow: int = Field(default=20, ge=0, le=100, description="Max pool overflow")

    @property
    def is_sqlite(self) -> bool:
        """Whether the configured backend is SQLite (no pool sizing)."""
        return self.url.startswith("sqlite")


class CatalogSettings(BaseSettings):
    """Configuration for study listing queries."""

    model_config = SettingsConfigDict(env_prefix="CATALOG_")

    cache_ttl_seconds: float = Field(
        default=30.0, ge=0, description="Lifetime of cached listings (0 disables caching)"
    )
    query_retries: int = Field(
        default=2, ge=0, le=10, description="Extra attempts for a failed listing query"
    )
    retry_backoff_seconds: float = Field(
        default=0.2, ge=0, description="Pause between listing query attempts"
    )


class ReconciliationSettings(BaseSettings):
    """Configuration for the blob/record reconciliation pass."""

    model_config = SettingsConfigDict(env_prefix="RECONCILE_")

    grace_period_minutes: int = Field(
        default=60,
        ge=0,
        description="Blobs younger than this are never reported as orphans",
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = Field(default="DICOM Study Catalog", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port")
    workers: int = Field(default=4, ge=1, le=32, description="Number of workers")

    # Security settings
    secret_key: str = Field(
        default="",
        description="Secret key for JWT tokens",
    )
    access_token_expire_minutes: int = Field(default=60, ge=5, description="Token expiration")
    algorithm: str = Field(default="HS256", description="JWT algorithm")

    # CORS settings
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )
    cors_allow_credentials: bool = Field(default=True, description="Allow CORS credentials")

    # Logging
    log_file: str | None = Field(default=None, description="Optional log file path")

    # Upload limits
    max_upload_mb: int = Field(default=512, ge=1, description="Largest accepted DICOM upload")

    # Nested settings
    storage: StorageSettings = Field(default_factory=StorageSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    catalog: CatalogSettings = Field(default_factory=CatalogSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        """Validate settings after initialization."""
        # Handle SECRET_KEY based on environment
        if _is_insecure_key(self.secret_key):
            if self.environment == "production":
                print(
                    "\n"
                    "=" * 70 + "\n"
                    "FATAL ERROR: SECRET_KEY is not configured for production!\n"
                    "=" * 70 + "\n"
                    "\n"
                    "A secure SECRET_KEY is required in production to sign\n"
                    "the bearer tokens that authenticate catalog callers.\n"
                    "\n"
                    "Generate a secure key with:\n"
                    "  openssl rand -hex 32\n"
                    "\n"
                    "Then set it in your environment or .env file:\n"
                    "  SECRET_KEY=<your-generated-key>\n"
                    "=" * 70 + "\n",
                    file=sys.stderr,
                )
                raise ValueError("SECRET_KEY must be set to a secure value in production")
            # Development mode - generate a temporary key and warn loudly
            temp_key = _generate_dev_secret_key()
            object.__setattr__(self, "secret_key", temp_key)
            print(
                "\n"
                "!" * 70 + "\n"
                "WARNING: Using auto-generated temporary SECRET_KEY for development!\n"
                "!" * 70 + "\n"
                "\n"
                "This key is NOT secure and will change on every restart.\n"
                "For persistent development, add SECRET_KEY to your .env file.\n"
                "!" * 70 + "\n",
                file=sys.stderr,
            )

        # Production-specific validations
        if self.environment == "production":
            if self.debug:
                raise ValueError("Debug mode must be disabled in production (DEBUG=false)")

        return self

    @property
    def max_upload_bytes(self) -> int:
        """Upload limit in bytes."""
        return self.max_upload_mb * 1024 * 1024


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
