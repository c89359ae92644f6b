import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from dotenv import load_dotenv

load_dotenv()


def _parse_durations(raw: str) -> Tuple[int, ...]:
    """Parse a comma separated list of loan durations (days), e.g. "7,14,21"."""
    values = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            values.append(int(part))
    return tuple(sorted(set(values))) or (7, 14, 21)


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")
    cors_origins: List[str] = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    )

    # Document store
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_timeout: float = float(os.getenv("LIBRARY_DB_TIMEOUT", "30"))

    # Loan rules
    loan_durations: Tuple[int, ...] = _parse_durations(os.getenv("LOAN_DURATIONS", "7,14,21"))
    # A claim on (user, book) whose loan document never appeared is treated
    # as abandoned after this many seconds.
    stale_claim_seconds: int = int(os.getenv("STALE_CLAIM_SECONDS", "60"))

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Application
    app_name: str = os.getenv("APP_NAME", "Library Loan API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Optional externally hosted default cover
    default_cover_url: Optional[str] = os.getenv("DEFAULT_COVER_URL")


settings = Settings()
