"""
Process-wide configuration.

All secrets, plan prices, plan durations and quotas are read once from the
environment (and a local `.env` in development) into a typed Settings object.
Components receive it explicitly; nothing looks configuration up per request.
"""
from functools import lru_cache
from typing import Dict, List

from dotenv import load_dotenv
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_ENV: str = "local"
    APP_NAME: str = "Celite"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "sqlite:///./local.db"

    # Razorpay (recurring billing provider)
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com/v1"
    RAZORPAY_CURRENCY: str = "INR"
    # Provider plan id -> local plan name, e.g. {"plan_Nxyz": "yearly"}
    RAZORPAY_PLAN_IDS: Dict[str, str] = {}

    # Amounts in minor units (paise). Values below the thresholds are treated as rupees.
    MONTHLY_AMOUNT: int = 79900
    YEARLY_AMOUNT: int = 549900
    WEEKLY_INSTALLMENT_AMOUNT: int = 49900

    MONTHLY_DURATION_DAYS: int = 30
    YEARLY_DURATION_DAYS: int = 365
    WEEKLY_DOWNLOAD_QUOTA: int = 3

    # Auth
    JWT_SECRET: str = "dev-secret-change-me"
    JWT_ALGORITHM: str = "HS256"
    CRON_SECRET: str = ""
    ADMIN_OWNER_IDS: List[str] = []

    # Notifications (Resend)
    RESEND_API_KEY: str = ""
    BILLING_FROM_EMAIL: str = "Celite <billing@celite.in>"

    # Reconciliation
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    RECONCILE_WORKERS: int = 5
    RECONCILE_BATCH_DEADLINE_SECONDS: float = 300.0
    WEBHOOK_EVENT_TTL_DAYS: int = 30

    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    CELERY_BROKER_URL: str = "redis://localhost:6379/0"

    @field_validator("DATABASE_URL")
    @classmethod
    def _normalize_database_url(cls, v: str) -> str:
        # Some managed providers still hand out postgres:// which SQLAlchemy rejects.
        if v.startswith("postgres://"):
            return "postgresql://" + v[len("postgres://"):]
        return v

    @field_validator("RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET", "RAZORPAY_WEBHOOK_SECRET", "RESEND_API_KEY")
    @classmethod
    def _strip_secret(cls, v: str) -> str:
        return v.strip()

    @field_validator("RAZORPAY_BASE_URL")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("RECONCILE_WORKERS")
    @classmethod
    def _clamp_workers(cls, v: int) -> int:
        return max(1, min(v, 32))

    @model_validator(mode="after")
    def _normalize_amounts(self) -> "Settings":
        # Monthly below 10000 and yearly below 100000 are rupee amounts; convert to paise.
        if self.MONTHLY_AMOUNT < 10000:
            self.MONTHLY_AMOUNT *= 100
        if self.YEARLY_AMOUNT < 100000:
            self.YEARLY_AMOUNT *= 100
        if self.WEEKLY_INSTALLMENT_AMOUNT < 1000:
            self.WEEKLY_INSTALLMENT_AMOUNT *= 100
        if self.APP_ENV in {"prod", "production"} and self.JWT_SECRET in {"", "dev-secret-change-me"}:
            raise ValueError("JWT_SECRET must be set in production (default dev secret detected)")
        return self

    @property
    def provider_configured(self) -> bool:
        return bool(self.RAZORPAY_KEY_ID and self.RAZORPAY_KEY_SECRET)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
