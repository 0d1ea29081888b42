import logging
import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Storage settings
    storage_backend: str = os.getenv("LIBRARY_STORAGE", "sqlite")  # memory | sqlite
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    seed_sample_data: bool = _env_flag("SEED_SAMPLE_DATA", "False")

    # Lending rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    fine_per_day: float = float(os.getenv("FINE_PER_DAY", "0.5"))
    reservation_hold_days: int = int(os.getenv("RESERVATION_HOLD_DAYS", "3"))
    due_soon_days: int = int(os.getenv("DUE_SOON_DAYS", "3"))
    default_max_books: int = int(os.getenv("DEFAULT_MAX_BOOKS", "4"))

    # E-mail settings
    enable_email_notifications: bool = _env_flag("ENABLE_EMAIL_NOTIFICATIONS", "True")
    email_dispatch_background: bool = _env_flag("EMAIL_DISPATCH_BACKGROUND", "True")
    sendgrid_api_key: Optional[str] = os.getenv("SENDGRID_API_KEY")
    sendgrid_api_url: str = os.getenv("SENDGRID_API_URL", "https://api.sendgrid.com/v3/mail/send")
    email_from: str = os.getenv("EMAIL_FROM", "library@university.edu")
    email_timeout: float = float(os.getenv("EMAIL_TIMEOUT", "10"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "University Library")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _env_flag("DEBUG", "False")


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the configured log level to the root logger."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
