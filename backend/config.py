import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class Settings:
    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./library.db")

    # Auth
    secret_key: str = os.getenv("SECRET_KEY", "change-this-secret-key-in-production")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    access_token_expire_minutes: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
    session_cookie_name: str = os.getenv("SESSION_COOKIE_NAME", "access_token")

    # Circulation rules
    fine_per_day: int = int(os.getenv("FINE_PER_DAY", "10"))
    min_loan_days: int = int(os.getenv("MIN_LOAN_DAYS", "1"))
    max_loan_days: int = int(os.getenv("MAX_LOAN_DAYS", "90"))

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # App
    app_name: str = os.getenv("APP_NAME", "Library Circulation API")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    cors_origins: List[str] = field(default_factory=lambda: _env_list("CORS_ORIGINS", "*"))


settings = Settings()
