import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: Optional[str] = os.getenv("LIBRARY_DB_FILE")
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "5"))

    # Lending policy
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    fine_per_day: Decimal = Decimal(os.getenv("FINE_PER_DAY", "50"))
    fine_rounding: str = os.getenv("FINE_ROUNDING", "ceil")  # ceil | floor

    # Remote API (used by client.LibraryClient)
    auth_base_url: str = os.getenv("AUTH_BASE_URL", "http://127.0.0.1:8000")
    http_timeout: float = float(os.getenv("HTTP_TIMEOUT", "10"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Lending Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


settings = Settings()


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for the API and CLI entry points."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
