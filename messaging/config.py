from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Token verification - required from .env
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    AUTH_COOKIE_NAME: str = "token"

    # Messaging limits
    MESSAGE_MAX_LENGTH: int = 1000
    # Minimum seconds between two send_message events on one connection (0 disables)
    MESSAGE_RATE_LIMIT_SECONDS: float = 1.0

    # Browser origin allowed to call the API with credentials
    CLIENT_URL: Optional[str] = None


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
