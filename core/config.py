"""
Application settings.

Values come from environment variables or a local .env file.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")

    APP_NAME: str = "Civic Points API"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    LOG_LEVEL: str = "INFO"

    # Classifier (stage 2 validation). No key means stage 1 only.
    GROQ_API_KEY: Optional[str] = None
    GROQ_MODEL: str = "llama-3.3-70b-versatile"
    CLASSIFIER_TIMEOUT_SECONDS: float = 12.0

    # Stage 1 heuristic gate
    MIN_AUTHORING_TIME_MS: int = 15000
    MIN_DESCRIPTION_LENGTH: int = 15
    MIN_TITLE_LENGTH: int = 8
    AI_CONFIDENCE_THRESHOLD: int = 70

    REPORT_SUBMITTED_POINTS: int = 1
    REPORT_RESOLVED_POINTS: int = 15
    REFERRAL_BONUS_POINTS: int = 25
    DAILY_LOGIN_POINTS: int = 2

    REDEMPTION_CODE_PREFIX: str = "FMC"
    SEED_DEMO_DATA: bool = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
