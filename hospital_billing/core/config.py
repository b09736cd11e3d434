# hospital_billing/core/config.py
import os
from typing import List
from pydantic import BaseModel
from dotenv import load_dotenv
from urllib.parse import quote_plus

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "Hospital Billing")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    # ---------- MySQL ----------
    MYSQL_HOST: str = os.getenv("MYSQL_HOST", "localhost")
    MYSQL_PORT: int = int(os.getenv("MYSQL_PORT", "3306"))
    MYSQL_USER: str = os.getenv("MYSQL_USER", "billing_user")
    MYSQL_PASSWORD: str = os.getenv("MYSQL_PASSWORD", "")
    MYSQL_DB: str = os.getenv("MYSQL_DB", "hospital_billing")
    DB_DRIVER: str = os.getenv("DB_DRIVER", "pymysql")

    # DATABASE_URL wins when set (sqlite for local runs / tests)
    SQLALCHEMY_DATABASE_URI: str = os.getenv("DATABASE_URL") or (
        f"mysql+{DB_DRIVER}://{quote_plus(MYSQL_USER)}:{quote_plus(MYSQL_PASSWORD)}"
        f"@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DB}?charset=utf8mb4")

    # ---------- Logging ----------
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    TIMEZONE: str = os.getenv("TIMEZONE", "UTC")

    # ---------- Billing flags ----------
    # completion hooks (appointment / lab result) create bill items
    BILLING_AUTOCREATE: bool = _flag("BILLING_AUTOCREATE", "true")
    BILLING_DEFAULT_TAX: float = float(
        os.getenv("BILLING_DEFAULT_TAX", "0") or 0.0)
    BILLING_DUE_DAYS: int = int(os.getenv("BILLING_DUE_DAYS", "30"))


settings = Settings()
