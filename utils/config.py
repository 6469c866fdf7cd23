# utils/config.py
# Application settings read from environment variables.
# Loads .env through python-dotenv; the `settings` instance is imported elsewhere.

import os
import warnings
import logging
from pathlib import Path

from dotenv import load_dotenv

project_root = Path(__file__).resolve().parent.parent
env_path = project_root / ".env"
if env_path.exists():
    load_dotenv(dotenv_path=env_path)

logger = logging.getLogger(__name__)


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Runtime configuration for the order service."""

    def __init__(self):
        # development, staging, production
        self.ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development").lower()

        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./orders.db")

        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
        self.LOG_FILE: str | None = os.getenv("LOG_FILE") or None

        self.FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
        self.BACKEND_URL: str = os.getenv("BACKEND_URL", "http://localhost:8000").rstrip("/")

        # Identity tokens are issued by the auth service, only verified here
        self.SECRET_KEY: str = os.getenv("SECRET_KEY", "change_this_secret_in_prod")
        self.ALGORITHM: str = os.getenv("ALGORITHM", "HS256")

        # MercadoPago
        self.MERCADOPAGO_ACCESS_TOKEN: str | None = os.getenv("MERCADOPAGO_ACCESS_TOKEN") or None
        self.MERCADOPAGO_ACCESS_TOKEN_DEV: str | None = os.getenv("MERCADOPAGO_ACCESS_TOKEN_DEV") or None
        self.MERCADOPAGO_ACCESS_TOKEN_PROD: str | None = os.getenv("MERCADOPAGO_ACCESS_TOKEN_PROD") or None
        self.MERCADOPAGO_WEBHOOK_SECRET: str | None = os.getenv("MERCADOPAGO_WEBHOOK_SECRET") or None
        self.MERCADOPAGO_TIMEOUT_SECONDS: float = float(os.getenv("MERCADOPAGO_TIMEOUT_SECONDS", "5"))
        self.CURRENCY_ID: str = os.getenv("CURRENCY_ID", "ARS")
        self.STATEMENT_DESCRIPTOR: str = os.getenv("STATEMENT_DESCRIPTOR", "HAIZE")
        self.PREFERENCE_EXPIRATION_HOURS: int = int(os.getenv("PREFERENCE_EXPIRATION_HOURS", "24"))

        # Email
        self.EMAIL_HOST: str = os.getenv("EMAIL_HOST", "smtp.gmail.com")
        self.EMAIL_PORT: int = int(os.getenv("EMAIL_PORT", "587"))
        self.EMAIL_USER: str | None = os.getenv("EMAIL_USER") or None
        self.EMAIL_PASS: str | None = os.getenv("EMAIL_PASS") or None
        self.EMAIL_FROM_NAME: str = os.getenv("EMAIL_FROM_NAME", "HAIZE")
        self.ADMIN_EMAIL: str | None = os.getenv("ADMIN_EMAIL") or self.EMAIL_USER
        self.EMAIL_MAX_ATTEMPTS: int = int(os.getenv("EMAIL_MAX_ATTEMPTS", "3"))
        self.EMAIL_RETRY_DELAY_SECONDS: float = float(os.getenv("EMAIL_RETRY_DELAY_SECONDS", "1"))
        self.EMAIL_BACKEND: str = os.getenv("EMAIL_BACKEND") or self._default_email_backend()

        self.WHATSAPP_SUPPORT_PHONE: str = os.getenv("WHATSAPP_SUPPORT_PHONE", "5491126907696")

        # Temporal (order expiry)
        self.ORDER_EXPIRY_ENABLED: bool = _as_bool(os.getenv("ORDER_EXPIRY_ENABLED"), False)
        self.ORDER_EXPIRY_MINUTES: int = int(os.getenv("ORDER_EXPIRY_MINUTES", "30"))
        self.TEMPORAL_HOST: str = os.getenv("TEMPORAL_HOST", "localhost")
        self.TEMPORAL_PORT: str = os.getenv("TEMPORAL_PORT", "7233")
        self.TEMPORAL_NAMESPACE: str = os.getenv("TEMPORAL_NAMESPACE", "default")
        self.ORDER_EXPIRY_TASK_QUEUE: str = os.getenv("ORDER_EXPIRY_TASK_QUEUE", "order-expiry-task-queue")

        # Whether a cancelled order may be reactivated through "recreate payment"
        self.ALLOW_CANCELLED_REACTIVATION: bool = _as_bool(
            os.getenv("ALLOW_CANCELLED_REACTIVATION"), True
        )

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT in ("production", "prod")

    @property
    def temporal_address(self) -> str:
        return f"{self.TEMPORAL_HOST}:{self.TEMPORAL_PORT}"

    def _default_email_backend(self) -> str:
        if self.ENVIRONMENT == "development" and not (self.EMAIL_USER and self.EMAIL_PASS):
            return "console"
        return "smtp"

    @property
    def mercadopago_access_token(self) -> str | None:
        """Token used against the gateway for the current environment."""
        if self.is_development:
            if self.MERCADOPAGO_ACCESS_TOKEN_DEV:
                return self.MERCADOPAGO_ACCESS_TOKEN_DEV
            if self.MERCADOPAGO_ACCESS_TOKEN:
                logger.warning(
                    "Using production MercadoPago credentials in development: payments will be real"
                )
            return self.MERCADOPAGO_ACCESS_TOKEN
        return self.MERCADOPAGO_ACCESS_TOKEN_PROD or self.MERCADOPAGO_ACCESS_TOKEN

    def _check(self) -> list[str]:
        problems = []
        if self.SECRET_KEY == "change_this_secret_in_prod":
            problems.append("SECRET_KEY is not set")
        if not (self.MERCADOPAGO_ACCESS_TOKEN_PROD or self.MERCADOPAGO_ACCESS_TOKEN):
            problems.append("MERCADOPAGO_ACCESS_TOKEN is not set")
        if self.DATABASE_URL.startswith("sqlite"):
            problems.append("DATABASE_URL points to SQLite")
        if self.EMAIL_BACKEND == "smtp" and not (self.EMAIL_USER and self.EMAIL_PASS):
            problems.append("EMAIL_USER/EMAIL_PASS are not set")
        return problems

    def validate(self) -> None:
        """Raises in production, warns elsewhere."""
        problems = self._check()
        if not problems:
            return
        message = "Configuration problems: " + ", ".join(problems)
        if self.is_production:
            raise ValueError(message)
        warnings.warn(message)


settings = Settings()
if settings.is_production:
    settings.validate()
