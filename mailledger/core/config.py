from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional



class Settings(BaseSettings):
    # -----------------------------
    # Database
    # -----------------------------
    DATABASE_URL: str = "sqlite:///./mailledger.db"
    SQL_ECHO: bool = False

    # -----------------------------
    # Message broker
    # -----------------------------
    REDIS_URL: str = "redis://localhost:6379/0"

    # -----------------------------
    # Secrets
    # -----------------------------
    SECRET_KEY: str
    ENCRYPTION_KEY: str  # Fernet key, urlsafe base64 of 32 bytes

    # -----------------------------
    # Mail provider OAuth
    # -----------------------------
    GMAIL_CLIENT_ID: str = ""
    GMAIL_CLIENT_SECRET: str = ""
    GMAIL_REDIRECT_URI: str = "http://localhost:8000/api/email-auth/callback/gmail"

    OUTLOOK_CLIENT_ID: str = ""
    OUTLOOK_CLIENT_SECRET: str = ""
    OUTLOOK_REDIRECT_URI: str = "http://localhost:8000/api/email-auth/callback/outlook"

    YAHOO_CLIENT_ID: str = ""
    YAHOO_CLIENT_SECRET: str = ""
    YAHOO_REDIRECT_URI: str = "http://localhost:8000/api/email-auth/callback/yahoo"

    PROVIDER_TIMEOUT_SECONDS: int = 30

    # -----------------------------
    # Downstream ledger
    # -----------------------------
    LEDGER_API_URL: str = "http://localhost:8083"
    LEDGER_ACCOUNT_NAME: str = "Default Account"
    LEDGER_PAYMENT_METHOD: str = "EMAIL_EXTRACTED"
    LEDGER_DEFAULT_CATEGORY_ID: Optional[str] = None
    LEDGER_SOURCE: str = "api"
    LEDGER_TIMEOUT_SECONDS: int = 30

    # -----------------------------
    # Scheduling
    # -----------------------------
    SYNC_INTERVAL_SECONDS: int = 300
    TOKEN_REFRESH_INTERVAL_SECONDS: int = 3600
    MATERIALIZER_INTERVAL_SECONDS: int = 120
    SYNC_MAX_MESSAGES_PER_RUN: int = 1000
    SYNC_WORKER_POOL_SIZE: int = 5
    SYNC_LOOKBACK_DAYS: int = 30
    AUTO_CREATE_CONFIDENCE_THRESHOLD: float = 0.8
    TOKEN_REFRESH_SKEW_SECONDS: int = 300
    MATERIALIZER_BATCH_SIZE: int = 100
    MATERIALIZER_CLAIM_TIMEOUT_SECONDS: int = 900

    # -----------------------------
    # OAuth state store
    # -----------------------------
    OAUTH_STATE_TTL_SECONDS: int = 600
    OAUTH_STATE_MAX_ENTRIES: int = 1000

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
