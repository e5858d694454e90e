from pydantic_settings import BaseSettings
from functools import lru_cache



class Settings(BaseSettings):
    # -----------------------------
    # Database
    # -----------------------------
    DATABASE_URL: str
    SQL_ECHO: bool = False

    # -----------------------------
    # Auth
    # -----------------------------
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # Shared secret for the cron-triggered expiration endpoint
    CRON_SECRET: str

    # -----------------------------
    # Message broker
    # -----------------------------
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/1"

    # -----------------------------
    # Lifecycle policy
    # -----------------------------
    TRANSACTION_EXPIRY_DAYS: int = 7
    PAYMENT_EXPIRY_DAYS: int = 1
    EXPIRATION_SWEEP_MINUTES: int = 60
    DEFAULT_CURRENCY: str = "IDR"

    # -----------------------------
    # App Environment
    # -----------------------------
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "info"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance to avoid reloading .env repeatedly"""
    return Settings()


settings = get_settings()
