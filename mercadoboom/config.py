"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Load environment variables once, prioritizing runtime env over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    # SQLite dev fallback stored under /db/app.db to keep repo tidy
    fallback_path = BASE_DIR / "db" / "app.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "MercadoBoom")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    # Flask run configuration (used by run.py + Docker)
    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))

    # Security verification codes and password recovery
    VERIFICATION_CODE_LENGTH: Final[int] = int(os.getenv("VERIFICATION_CODE_LENGTH", "6"))
    VERIFICATION_CODE_TTL_MINUTES: Final[int] = int(os.getenv("VERIFICATION_CODE_TTL_MINUTES", "10"))
    PASSWORD_RESET_TTL_HOURS: Final[int] = int(os.getenv("PASSWORD_RESET_TTL_HOURS", "24"))
    PASSWORD_MIN_LENGTH: Final[int] = int(os.getenv("PASSWORD_MIN_LENGTH", "8"))

    # Direct transfer defaults, used only to seed the admin-editable row
    DEFAULT_TRANSFER_DISCOUNT_PERCENT: Final[Decimal] = Decimal(
        os.getenv("DEFAULT_TRANSFER_DISCOUNT_PERCENT", "3.50")
    )
    DEFAULT_TRANSFER_DISCOUNT_TEXT: Final[str] = os.getenv(
        "DEFAULT_TRANSFER_DISCOUNT_TEXT", "por evitar comisiones"
    )
    BANK_NAME: Final[str] = os.getenv("BANK_NAME", "BBVA México")
    BANK_CLABE: Final[str] = os.getenv("BANK_CLABE", "012180004799747847")
    BANK_ACCOUNT_HOLDER: Final[str] = os.getenv("BANK_ACCOUNT_HOLDER", "MercadoBoom SA de CV")

    # Messaging channels (simulated when credentials are missing)
    TWILIO_ACCOUNT_SID: Final[str] = os.getenv("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN: Final[str] = os.getenv("TWILIO_AUTH_TOKEN", "")
    TWILIO_MESSAGING_SERVICE_SID: Final[str] = os.getenv("TWILIO_MESSAGING_SERVICE_SID", "")
    TWILIO_PHONE_NUMBER: Final[str] = os.getenv("TWILIO_PHONE_NUMBER", "")
    TWILIO_WHATSAPP_NUMBER: Final[str] = os.getenv("TWILIO_WHATSAPP_NUMBER", "")
    SMTP_HOST: Final[str] = os.getenv("SMTP_HOST", "")
    SMTP_PORT: Final[int] = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME: Final[str] = os.getenv("SMTP_USERNAME", "")
    SMTP_PASSWORD: Final[str] = os.getenv("SMTP_PASSWORD", "")
    SMTP_USE_TLS: Final[bool] = _str_to_bool(os.getenv("SMTP_USE_TLS"), default=True)
    MAIL_FROM: Final[str] = os.getenv("MAIL_FROM", "no-reply@mercadoboom.mx")

    # MercadoPago gateway
    MERCADOPAGO_ACCESS_TOKEN: Final[str] = os.getenv("MERCADOPAGO_ACCESS_TOKEN", "")
    MERCADOPAGO_PUBLIC_KEY: Final[str] = os.getenv("MERCADOPAGO_PUBLIC_KEY", "")
    MERCADOPAGO_API_URL: Final[str] = os.getenv("MERCADOPAGO_API_URL", "https://api.mercadopago.com")
    MERCADOPAGO_TIMEOUT_SECONDS: Final[float] = float(os.getenv("MERCADOPAGO_TIMEOUT_SECONDS", "10"))
    PUBLIC_BASE_URL: Final[str] = os.getenv("PUBLIC_BASE_URL", "http://localhost:5000")

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")
    OBSERVABILITY_ENABLED: Final[bool] = _str_to_bool(os.getenv("OBSERVABILITY_ENABLED"), default=True)

    # Bootstrap admin, created on startup when a password is provided
    ADMIN_USERNAME: Final[str] = os.getenv("ADMIN_USERNAME", "admin")
    ADMIN_PASSWORD: Final[str] = os.getenv("ADMIN_PASSWORD", "")
    ADMIN_EMAIL: Final[str] = os.getenv("ADMIN_EMAIL", "admin@mercadoboom.mx")

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["JSON_AS_ASCII"] = False
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        app.config["OBSERVABILITY_ENABLED"] = cls.OBSERVABILITY_ENABLED
