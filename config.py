# ======================================
# config.py
# (Loads critical environment variables)
# ======================================
import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Load .env when running locally
load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"❌ {name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def normalize_database_url(url: str) -> str:
    """Ensure the asyncpg driver is used for Postgres URLs."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://") and "+asyncpg" not in url:
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


@dataclass(frozen=True)
class Settings:
    database_url: str
    sql_echo: bool = False
    log_level: str = "INFO"
    environment: str = "production"
    sentry_dsn: str | None = None
    bot_token: str | None = None
    auto_create_tables: bool = False

    # ----------------------
    # Scheduler
    # ----------------------
    finalize_contest_interval: int = 300
    settlement_max_attempts: int = 5

    # ----------------------
    # Notifications
    # ----------------------
    notification_job_interval: int = 60
    notification_max_retry: int = 3
    notification_fetch_limit: int = 100

    # ----------------------
    # Wallet
    # ----------------------
    referral_bonus: int = 50
    referrer_bonus: int = 50
    withdraw_min_amount: int = 100
    app_upi_id: str = ""


def load_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("❌ DATABASE_URL not set in environment variables")

    return Settings(
        database_url=normalize_database_url(database_url),
        sql_echo=_env_bool("SQL_ECHO"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        environment=os.getenv("ENVIRONMENT", "production"),
        sentry_dsn=os.getenv("SENTRY_DSN") or None,
        bot_token=os.getenv("BOT_TOKEN") or None,
        auto_create_tables=_env_bool("AUTO_CREATE_TABLES"),
        finalize_contest_interval=_env_int("FINALIZE_CONTEST_INTERVAL_SECONDS", 300),
        settlement_max_attempts=_env_int("SETTLEMENT_MAX_ATTEMPTS", 5),
        notification_job_interval=_env_int("NOTIFICATION_JOB_INTERVAL_SECONDS", 60),
        notification_max_retry=_env_int("NOTIFICATION_MAX_RETRY", 3),
        notification_fetch_limit=_env_int("NOTIFICATION_FETCH_LIMIT", 100),
        referral_bonus=_env_int("REFERRAL_BONUS", 50),
        referrer_bonus=_env_int("REFERRER_BONUS", 50),
        withdraw_min_amount=_env_int("WITHDRAW_MIN_AMOUNT", 100),
        app_upi_id=os.getenv("APP_UPI_ID", ""),
    )
