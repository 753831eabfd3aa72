"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env file
as a fallback. The .env file is gitignored; .env.example is the template.

Pydantic Settings automatically:
  1. Reads from environment variables (highest priority)
  2. Falls back to .env file values
  3. Uses defaults defined here (lowest priority)

Usage:
    from fundcard.config import settings
    print(settings.POLL_INTERVAL_SECONDS)
"""

from decimal import Decimal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the card issuance engine.

    Required fields (no defaults) MUST be set in .env or environment:
      - SECRET_KEY: Signs key-derivation challenges and session tokens
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Application ---
    APP_NAME: str = "FundCard Issuance Engine"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # --- Database ---
    # SQLite for local runs; swap to a PostgreSQL URL (asyncpg driver) for production
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/fundcard.db"

    # --- Challenges and sessions ---
    # REQUIRED: No default, forces the operator to set a real secret
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    CHALLENGE_EXPIRE_MINUTES: int = 5
    SESSION_EXPIRE_MINUTES: int = 30
    SESSION_PURGE_INTERVAL_SECONDS: float = 60.0

    # --- Key derivation ---
    KDF_ITERATIONS: int = 100_000
    KDF_SALT: str = "fundcard-card-vault-v1"

    # --- Funding policy ---
    FEE_RATE: Decimal = Decimal("0.0002")
    MIN_FUNDING_AMOUNT: int = 10
    MAX_FUNDING_AMOUNT: int = 5000
    DEFAULT_CURRENCY: str = "GHS"

    # --- Verification polling ---
    POLL_INTERVAL_SECONDS: float = 5.0
    POLL_TIMEOUT_SECONDS: float = 600.0

    # --- Card policy ---
    CARD_EXPIRY_MONTHS: int = 36

    # --- Mobile money rail (MoMo Collections API) ---
    MOMO_BASE_URL: str = "https://sandbox.momodeveloper.mtn.com"
    MOMO_SUBSCRIPTION_KEY: str = ""
    MOMO_API_USER_ID: str = ""
    MOMO_API_KEY: str = ""
    MOMO_ENVIRONMENT: str = "sandbox"

    # --- Crypto rail (Commerce-style charges API) ---
    CRYPTO_BASE_URL: str = "https://api.commerce.coinbase.com"
    CRYPTO_API_KEY: str = ""
    CRYPTO_API_VERSION: str = "2018-03-22"

    # --- External ledger mirror (optional) ---
    # Leave MIRROR_URL empty to disable mirroring entirely
    MIRROR_URL: str = ""
    MIRROR_API_KEY: str = ""

    # --- Operator access ---
    # Merchant-side actions (refunds) need X-Operator-Key; empty disables them
    OPERATOR_API_KEY: str = ""

    # --- CORS ---
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000"]

    @field_validator("KDF_ITERATIONS")
    @classmethod
    def iterations_floor(cls, value: int) -> int:
        if value < 100_000:
            raise ValueError("KDF_ITERATIONS must be at least 100000")
        return value


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()
