"""
Runtime configuration for the LearnTube API.

All settings come from environment variables; a local .env file is loaded
first when present.
"""
import os
import logging
from functools import lru_cache
from typing import List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_JWT_SECRET = "dev-secret-key-change-in-prod"


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", key, value, default)
        return default


def get_list_env(key: str, default: str) -> List[str]:
    value = os.getenv(key, default)
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    def __init__(self):
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
        self.DATABASE_NAME: str = os.getenv("DATABASE_NAME", "learntube")

        self.JWT_SECRET: str = os.getenv("JWT_SECRET", DEFAULT_JWT_SECRET)
        self.JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
        self.ACCESS_TOKEN_EXPIRE_DAYS: int = get_int_env("ACCESS_TOKEN_EXPIRE_DAYS", 30)
        self.BCRYPT_ROUNDS: int = get_int_env("BCRYPT_ROUNDS", 10)

        self.API_PREFIX: str = os.getenv("API_PREFIX", "/api").rstrip("/")
        self.CORS_ORIGINS: List[str] = get_list_env("CORS_ORIGINS", "*")

        self.CASCADE_MAX_ATTEMPTS: int = max(1, get_int_env("CASCADE_MAX_ATTEMPTS", 3))

        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.HOST: str = os.getenv("HOST", "0.0.0.0")
        self.PORT: int = get_int_env("PORT", 8000)

    @property
    def uses_default_secret(self) -> bool:
        return self.JWT_SECRET == DEFAULT_JWT_SECRET


@lru_cache()
def get_settings() -> Settings:
    return Settings()
