"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class BackendProvider(str, Enum):
    supabase = "supabase"
    local = "local"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Backend selection (managed Supabase project or in-process store)
    BACKEND_PROVIDER: BackendProvider = BackendProvider.supabase

    # Supabase (PostgREST) connection
    SUPABASE_URL: str = "http://localhost:54321"
    SUPABASE_ANON_KEY: str = ""

    # Fernet key for encrypted_data columns (urlsafe base64, 32 bytes)
    ENCRYPTION_KEY: str = ""

    # HTTP client behaviour
    HTTP_TIMEOUT: float = 10.0
    HTTP_MAX_RETRIES: int = 3


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
