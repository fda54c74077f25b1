from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    razorpay_key_id: str
    razorpay_key_secret: str
    razorpay_webhook_secret: str
    payment_currency: str
    self_attested_timeout_seconds: int
    gateway_attempt_ttl_seconds: int
    meeting_base_url: str
    brevo_api_key: str
    notify_sender_email: str
    notify_max_attempts: int
    notify_retry_backoff_seconds: int


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/referralme.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", "").strip(),
        razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", "").strip(),
        razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", "").strip(),
        payment_currency=os.getenv("PAYMENT_CURRENCY", "INR").strip().upper(),
        self_attested_timeout_seconds=max(
            30, min(3600, _int_env("SELF_ATTESTED_TIMEOUT_SECONDS", 300))
        ),
        gateway_attempt_ttl_seconds=max(300, _int_env("GATEWAY_ATTEMPT_TTL_SECONDS", 3600)),
        meeting_base_url=os.getenv("MEETING_BASE_URL", "https://referralme.daily.co")
        .strip()
        .rstrip("/"),
        brevo_api_key=os.getenv("BREVO_API_KEY", "").strip(),
        notify_sender_email=os.getenv("NOTIFY_SENDER_EMAIL", "noreply@referralme.in").strip(),
        notify_max_attempts=max(1, _int_env("NOTIFY_MAX_ATTEMPTS", 5)),
        notify_retry_backoff_seconds=max(1, _int_env("NOTIFY_RETRY_BACKOFF_SECONDS", 60)),
    )
