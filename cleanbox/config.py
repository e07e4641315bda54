"""
Application configuration for CleanBox.

This file handles all configuration settings for the scan pipeline, including:
- Database location
- Google OAuth client credentials (used to refresh Gmail tokens)
- OpenAI assistant settings for promo / package extraction
- Scan, queue and logging settings
- Environment detection (development vs production)
"""
from __future__ import annotations

import os
import warnings
from pathlib import Path

# Get the base directory of the project (one level above this package)
BASE_DIR = Path(__file__).resolve().parent.parent
# SQLite database file path
DB_PATH = BASE_DIR / "cleanbox.sqlite3"


def in_railway() -> bool:
    """
    Check if running on Railway platform.

    Railway sets RAILWAY_PUBLIC_DOMAIN when the app is deployed there.
    We use this to detect if we're in production.
    """
    return bool(os.getenv("RAILWAY_PUBLIC_DOMAIN"))


def is_production() -> bool:
    """
    Check if running in production environment.

    Production means either:
    - Running on Railway (has RAILWAY_PUBLIC_DOMAIN)
    - FLASK_ENV is explicitly set to "production"
    """
    return in_railway() or os.getenv("FLASK_ENV") == "production"


def _require_env_var(name: str, value: str | None, production_only: bool = False) -> str:
    """Require an environment variable, raising RuntimeError if missing in production."""
    if not value:
        if is_production() or not production_only:
            raise RuntimeError(
                f"{name} missing. Set this in Railway → Service → Variables "
                f"or in your .env file for local development."
            )
        warnings.warn(f"{name} not set. Some features may not work.", UserWarning)
    return value or ""


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        warnings.warn(f"{name}={raw!r} is not an integer, using {default}.", UserWarning)
        return default


def _list_env(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class BaseConfig:
    """
    Base configuration shared across environments.

    Environment-specific configs inherit from this and override what differs.
    """

    # SQLite file holding emails, promo codes, package events and packages
    DATABASE_PATH = os.getenv("DATABASE_PATH") or str(DB_PATH)

    # OAuth scopes - Gmail read access plus modify (needed to trash scanned messages)
    GOOGLE_SCOPES = [
        "openid",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/gmail.modify",
    ]

    # Google OAuth client - only used to refresh stored access tokens
    GOOGLE_CLIENT_ID = _require_env_var(
        "GOOGLE_CLIENT_ID", os.getenv("GOOGLE_CLIENT_ID"), production_only=True
    )
    GOOGLE_CLIENT_SECRET = _require_env_var(
        "GOOGLE_CLIENT_SECRET", os.getenv("GOOGLE_CLIENT_SECRET"), production_only=True
    )

    # OpenAI assistants - one tuned for promos, one for order tracking
    OPENAI_API_KEY = _require_env_var(
        "OPENAI_API_KEY", os.getenv("OPENAI_API_KEY"), production_only=True
    )
    OPENAI_ASSISTANT_ID = os.getenv("OPENAI_ASSISTANT_ID", "")
    OPENAI_PACKAGE_ASSISTANT_ID = os.getenv("OPENAI_PACKAGE_ASSISTANT_ID", "")
    EXTRACTION_TIMEOUT = _int_env("EXTRACTION_TIMEOUT", 30)  # seconds of run polling
    EXTRACTION_POLL_INTERVAL = 1.0

    # Gmail scan window
    SCAN_MAX_RESULTS = _int_env("SCAN_MAX_RESULTS", 200)
    SCAN_NEWER_THAN = os.getenv("SCAN_NEWER_THAN", "90d")

    # Senders that never carry order tracking (payment notifications etc.)
    PACKAGE_SENDER_BLACKLIST = _list_env(
        "PACKAGE_SENDER_BLACKLIST", ["paypal.com", "@paypal."]
    )

    # Background queue: workers, attempts per job, first backoff delay
    QUEUE_WORKERS = _int_env("QUEUE_WORKERS", 2)
    QUEUE_ATTEMPTS = _int_env("QUEUE_ATTEMPTS", 3)
    QUEUE_BACKOFF_SECONDS = 5.0

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def _require_prod(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(
            f"{name} missing in production. Set it in Railway → Service → Variables."
        )
    return value


class ProductionConfig(BaseConfig):
    """Production configuration: requires OpenAI assistants and Google client."""

    @classmethod
    def validate(cls) -> None:
        for name in (
            "GOOGLE_CLIENT_ID",
            "GOOGLE_CLIENT_SECRET",
            "OPENAI_API_KEY",
            "OPENAI_ASSISTANT_ID",
            "OPENAI_PACKAGE_ASSISTANT_ID",
        ):
            _require_prod(name)


class DevelopmentConfig(BaseConfig):
    """Development configuration: allows missing credentials with warnings."""

    DEBUG = True
    LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG")


class TestConfig(BaseConfig):
    """Configuration overrides used for tests."""

    TESTING = True
    # Every connection opens the file again, so tests point this at a tmp file
    DATABASE_PATH = str(BASE_DIR / "cleanbox-test.sqlite3")
    GOOGLE_CLIENT_ID = "test-client-id"
    GOOGLE_CLIENT_SECRET = "test-client-secret"
    OPENAI_API_KEY = "test-openai-key"
    OPENAI_ASSISTANT_ID = "asst_promo_test"
    OPENAI_PACKAGE_ASSISTANT_ID = "asst_package_test"
    EXTRACTION_POLL_INTERVAL = 0.0
    QUEUE_WORKERS = 1
    QUEUE_BACKOFF_SECONDS = 0.0


def get_config() -> type:
    """Config class for the current environment: production or development."""
    return ProductionConfig if is_production() else DevelopmentConfig
