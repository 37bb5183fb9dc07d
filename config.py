"""
Application Configuration & Token Limits
Environment-driven settings for the transcriber backend
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List
from functools import lru_cache
import logging
import os
from pathlib import Path
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load .env only in development (hosted deployments inject real env vars)
if os.getenv("RENDER") != "true":
    BASE_DIR = Path(__file__).resolve().parent
    ENV_FILE = BASE_DIR / ".env"
    if ENV_FILE.exists():
        load_dotenv(ENV_FILE, override=True)


class Settings(BaseSettings):
    """Application settings with explicit defaults"""

    # Environment
    DEBUG: bool = Field(default=False, validation_alias="DEBUG")
    API_URL: str = Field(default="http://localhost:8000", validation_alias="API_URL")
    FRONTEND_URL: str = Field(default="http://localhost:3000", validation_alias="FRONTEND_URL")

    # MongoDB
    MONGODB_URI: str = Field(default="mongodb://localhost:27017", validation_alias="MONGODB_URI")
    DATABASE_NAME: str = Field(default="transcriber", validation_alias="DATABASE_NAME")

    # JWT
    JWT_SECRET_KEY: str = Field(default="your-secret-key-change-this", validation_alias="JWT_SECRET_KEY")
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    IMPERSONATION_EXPIRE_MINUTES: int = 120

    # Stripe
    STRIPE_SECRET_KEY: str = Field(default="", validation_alias="STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET: str = Field(default="", validation_alias="STRIPE_WEBHOOK_SECRET")

    # Anonymous usage retention (days after transfer before the record is purged)
    ANONYMOUS_RETENTION_DAYS: int = Field(default=30, validation_alias="ANONYMOUS_RETENTION_DAYS")

    @property
    def ALLOWED_ORIGINS(self) -> List[str]:
        if self.DEBUG:
            return ["*"]
        origins = [self.FRONTEND_URL]
        if self.API_URL:
            origins.append(self.API_URL)
        return origins

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        populate_by_name = True
        extra = "ignore"


# Free uses granted to an unauthenticated fingerprint
ANONYMOUS_TRANSCRIPTION_LIMIT = 3

# Welcome grant for a freshly authenticated account
FREE_TOKENS_FOR_NEW_USERS = 1

TOKEN_COSTS = {
    "transcription_creation": 1,
    "notes_generation": 1,
    "prd_generation": 2,
}


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()


def validate_settings() -> bool:
    """Validate critical settings are configured"""
    errors = []

    if not settings.MONGODB_URI:
        errors.append("MONGODB_URI is not set")
    if not settings.JWT_SECRET_KEY or settings.JWT_SECRET_KEY == "your-secret-key-change-this":
        errors.append("JWT_SECRET_KEY is not set or using default")
    if not settings.STRIPE_WEBHOOK_SECRET:
        errors.append("STRIPE_WEBHOOK_SECRET is not set")

    for error in errors:
        logger.warning(f"[CONFIG] {error}")

    if not errors:
        logger.info("[CONFIG] All critical settings configured")

    return len(errors) == 0
