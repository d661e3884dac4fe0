import os
import logging
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_OPENROUTER_MODELS = [
    "openrouter/auto",
    "google/gemini-2.0-flash-lite-preview-02-05:free",
    "google/gemini-2.0-flash-exp:free",
    "deepseek/deepseek-chat:free",
    "mistralai/mistral-7b-instruct:free",
    "microsoft/phi-3-mini-128k-instruct:free",
    "qwen/qwen-2.5-72b-instruct:free",
]


def _split_csv(value: Optional[str]) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


class Settings(BaseModel):
    """Process-wide configuration, resolved once from the environment."""

    environment: str = "development"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./ideavalidator.db"

    jwt_secret: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    jwt_expire_days: int = 7

    # Provider credentials; an empty value disables that branch of the fallback chain
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    openrouter_api_key: str = ""
    openrouter_models: List[str] = Field(default_factory=lambda: list(DEFAULT_OPENROUTER_MODELS))
    openrouter_referer: str = "https://greenli8.com"
    sarvam_api_key: str = ""
    sarvam_model: str = "sarvam-m"

    ai_deadline_seconds: float = 8.5
    ai_min_attempt_seconds: float = 1.0
    ai_chat_timeout_seconds: float = 8.5

    signup_credits: int = 3
    report_page_size: int = 20
    # limits-style rate string applied per client address to every route but /health
    rate_limit: str = "200 per 15 minutes"

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_single: str = ""
    stripe_price_maker: str = ""
    stripe_price_pro: str = ""

    app_url: str = "http://localhost:5173"
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        env = os.environ
        values = {
            "environment": env.get("ENVIRONMENT", "development"),
            "log_level": env.get("LOG_LEVEL", "INFO"),
            "database_url": env.get("DATABASE_URL", "sqlite:///./ideavalidator.db"),
            "jwt_secret": env.get("JWT_SECRET", "dev-secret-change-me"),
            "jwt_expire_days": env.get("JWT_EXPIRE_DAYS", 7),
            "gemini_api_key": env.get("API_KEY") or env.get("GEMINI_API_KEY", ""),
            "gemini_model": env.get("GEMINI_MODEL", "gemini-2.0-flash"),
            "openrouter_api_key": env.get("OPENROUTER_API_KEY", ""),
            "openrouter_models": _split_csv(env.get("OPENROUTER_MODELS")) or list(DEFAULT_OPENROUTER_MODELS),
            "sarvam_api_key": env.get("SARVAM_API_KEY", ""),
            "sarvam_model": env.get("SARVAM_MODEL", "sarvam-m"),
            "ai_deadline_seconds": env.get("AI_DEADLINE_SECONDS", 8.5),
            "ai_min_attempt_seconds": env.get("AI_MIN_ATTEMPT_SECONDS", 1.0),
            "ai_chat_timeout_seconds": env.get("AI_CHAT_TIMEOUT_SECONDS", 8.5),
            "signup_credits": env.get("SIGNUP_CREDITS", 3),
            "report_page_size": env.get("REPORT_PAGE_SIZE", 20),
            "rate_limit": env.get("RATE_LIMIT", "200 per 15 minutes"),
            "stripe_secret_key": env.get("STRIPE_SECRET_KEY", ""),
            "stripe_webhook_secret": env.get("STRIPE_WEBHOOK_SECRET", ""),
            "stripe_price_single": env.get("STRIPE_PRICE_SINGLE", ""),
            "stripe_price_maker": env.get("STRIPE_PRICE_MAKER", ""),
            "stripe_price_pro": env.get("STRIPE_PRICE_PRO", ""),
            "app_url": env.get("APP_URL", "http://localhost:5173"),
            "allowed_origins": _split_csv(env.get("ALLOWED_ORIGINS")) or ["http://localhost:5173"],
        }
        settings = cls(**values)
        settings.warn_on_weak_config()
        return settings

    def warn_on_weak_config(self) -> None:
        if len(self.jwt_secret) < 32:
            logger.warning("JWT_SECRET should be at least 32 characters long")
        if not (self.gemini_api_key or self.openrouter_api_key or self.sarvam_api_key):
            logger.error("No AI provider key configured (API_KEY, OPENROUTER_API_KEY, SARVAM_API_KEY)")
        if not self.stripe_secret_key:
            logger.warning("STRIPE_SECRET_KEY is not set; checkout is disabled")


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
