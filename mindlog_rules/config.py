"""
Rules Engine Configuration
Runtime settings for the alerting core, read from environment variables.

Clinical thresholds are deliberately NOT here: they are fixed constants in
services/alert_engine/config_service.py pending clinical sign-off.
"""

import logging
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Settings for the rules worker process"""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database
    DATABASE_URL: str = ""

    # Redis (job queue + alert pub/sub)
    REDIS_URL: str = "redis://localhost:6379"

    # Compliance gates for the AI-backed journal rule
    AI_INSIGHTS_ENABLED: bool = False
    OPENAI_BAA_SIGNED: bool = False
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    JOURNAL_SENTIMENT_TIMEOUT_SECONDS: float = 20.0

    # Worker
    RULES_WORKER_CONCURRENCY: int = 5
    RULES_JOB_ATTEMPTS: int = 3
    RULES_JOB_BACKOFF_SECONDS: float = 5.0

    # Defines the as-of calendar day and the 02:00 nightly batch
    CLINIC_TIMEZONE: str = "America/New_York"

    ENVIRONMENT: str = "development"

    def validate_database_url(self):
        if not self.DATABASE_URL:
            raise ValueError(
                "DATABASE_URL environment variable is required for database operations. "
                "Please set it to your PostgreSQL connection string."
            )


def get_settings() -> Settings:
    return Settings()


def check_openai_baa_compliance(settings: Settings) -> bool:
    """Log why the journal sentiment rule is gated off, if it is"""
    if not settings.AI_INSIGHTS_ENABLED:
        logger.info("AI insights disabled: journal sentiment rule will not run")
        return False
    if not settings.OPENAI_BAA_SIGNED:
        logger.warning("HIPAA COMPLIANCE WARNINGS:")
        logger.warning("CRITICAL: Business Associate Agreement (BAA) with OpenAI NOT signed. Journal sentiment rule BLOCKED.")
        logger.warning("Set OPENAI_BAA_SIGNED=true after signing BAA.")
        return False
    return True
