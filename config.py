import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    db_busy_timeout: float = float(os.getenv("DB_BUSY_TIMEOUT", "5.0"))  # seconds
    db_retry_attempts: int = int(os.getenv("DB_RETRY_ATTEMPTS", "3"))
    db_retry_backoff: float = float(os.getenv("DB_RETRY_BACKOFF", "0.05"))  # doubled per attempt

    # Circulation policy
    allow_duplicate_reservations: bool = _env_flag("ALLOW_DUPLICATE_RESERVATIONS")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
