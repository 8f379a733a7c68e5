from __future__ import annotations

from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load env values for components that read os.environ directly.
_project_root = Path(__file__).resolve().parents[1]
load_dotenv(_project_root / ".env", override=False)


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    DATABASE_URL: str = "sqlite:///./execution_engine.db"
    DB_POOL_SIZE: int = 20
    DB_POOL_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30

    # Shared secret for internal callers (schedulers, the approval UI backend).
    ADS_OPERATOR_INTERNAL_SECRET: str

    GOOGLE_ADS_CLIENT_ID: str | None = None
    GOOGLE_ADS_CLIENT_SECRET: str | None = None
    GOOGLE_ADS_DEVELOPER_TOKEN: str | None = None
    GOOGLE_ADS_REFRESH_TOKEN: str | None = None
    GOOGLE_ADS_LOGIN_CUSTOMER_ID: str | None = None
    GOOGLE_ADS_API_VERSION: str = "v17"
    GOOGLE_ADS_API_BASE_URL: str = "https://googleads.googleapis.com"
    GOOGLE_OAUTH_TOKEN_URL: str = "https://oauth2.googleapis.com/token"

    RESEND_API_KEY: str | None = None
    RESEND_API_BASE_URL: str = "https://api.resend.com"
    RESEND_FROM_ADDRESS: str = "Marketing Team <onboarding@resend.dev>"
    # Svix signing secret (whsec_...) for Resend delivery webhooks.
    RESEND_WEBHOOK_SECRET: str | None = None
    RESEND_WEBHOOK_TOLERANCE_SECONDS: int = 5 * 60

    ELEVENLABS_API_KEY: str | None = None
    ELEVENLABS_API_BASE_URL: str = "https://api.elevenlabs.io"

    PROVIDER_REQUEST_TIMEOUT_SECONDS: float = 30.0

    OUTBOX_TIME_BUCKET: Literal["day", "hour"] = "day"
    # Queued rows older than this are treated as interrupted by the recovery sweep.
    OUTBOX_STALE_AFTER_SECONDS: int = 15 * 60
    OUTBOX_DISPATCH_BATCH_SIZE: int = 100
    OUTBOX_MAX_SCHEDULE_DAYS: int = 30

    CRM_ACTIVE_LEAD_STATUSES: list[str] = ["new", "contacted", "qualified"]
    CRM_RECIPIENT_FALLBACK_LIMIT: int = 100

    @field_validator("CRM_ACTIVE_LEAD_STATUSES", mode="before")
    @classmethod
    def split_statuses(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [status.strip() for status in value.split(",") if status.strip()]
        return value

    @field_validator("ADS_OPERATOR_INTERNAL_SECRET")
    @classmethod
    def validate_secret(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("ADS_OPERATOR_INTERNAL_SECRET must not be empty")
        return value

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
