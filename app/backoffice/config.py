import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    venue_name: str
    venue_timezone: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    twilio_account_sid: str
    twilio_auth_token: str
    twilio_from_number: str

    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    smtp_from: str

    openai_api_key: str
    openai_base_url: str
    openai_model: str

    sms_global_hourly_limit: int
    sms_recipient_hourly_limit: int
    sms_recipient_daily_limit: int

    login_max_attempts: int
    login_window_seconds: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///backoffice.db"),
        venue_name=_getenv("VENUE_NAME", "The Venue"),
        venue_timezone=_getenv("VENUE_TIMEZONE", "Europe/London"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "lon1"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        twilio_account_sid=_getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=_getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_from_number=_getenv("TWILIO_FROM_NUMBER", ""),
        smtp_host=_getenv("SMTP_HOST", ""),
        smtp_port=_getenv_int("SMTP_PORT", 587),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        smtp_from=_getenv("SMTP_FROM", ""),
        openai_api_key=_getenv("OPENAI_API_KEY", ""),
        openai_base_url=_getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        openai_model=_getenv("OPENAI_MODEL", "gpt-4o-mini"),
        sms_global_hourly_limit=_getenv_int("SMS_SAFETY_GLOBAL_HOURLY_LIMIT", 120),
        sms_recipient_hourly_limit=_getenv_int("SMS_SAFETY_RECIPIENT_HOURLY_LIMIT", 3),
        sms_recipient_daily_limit=_getenv_int("SMS_SAFETY_RECIPIENT_DAILY_LIMIT", 8),
        login_max_attempts=_getenv_int("LOGIN_MAX_ATTEMPTS", 5),
        login_window_seconds=_getenv_int("LOGIN_WINDOW_SECONDS", 300),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "VENUE_NAME": s.venue_name,
        "VENUE_TIMEZONE": s.venue_timezone,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "TWILIO_ACCOUNT_SID": s.twilio_account_sid,
        "TWILIO_AUTH_TOKEN": s.twilio_auth_token,
        "TWILIO_FROM_NUMBER": s.twilio_from_number,
        "SMTP_HOST": s.smtp_host,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "SMTP_FROM": s.smtp_from,
        "OPENAI_API_KEY": s.openai_api_key,
        "OPENAI_BASE_URL": s.openai_base_url,
        "OPENAI_MODEL": s.openai_model,
        "SMS_GLOBAL_HOURLY_LIMIT": s.sms_global_hourly_limit,
        "SMS_RECIPIENT_HOURLY_LIMIT": s.sms_recipient_hourly_limit,
        "SMS_RECIPIENT_DAILY_LIMIT": s.sms_recipient_daily_limit,
        "LOGIN_MAX_ATTEMPTS": s.login_max_attempts,
        "LOGIN_WINDOW_SECONDS": s.login_window_seconds,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # contracts and floor plans (10MB)
        "MAX_CONTENT_LENGTH": 10 * 1024 * 1024,
    }
