from pydantic_settings import BaseSettings
from pydantic import Field
import os
from pathlib import Path
import dotenv

# Always load apps/.env (relative to this file), regardless of where the process is started.
_APPS_DIR = Path(__file__).resolve().parents[1]
dotenv.load_dotenv(dotenv_path=_APPS_DIR / ".env", override=False)


class Settings(BaseSettings):
    # "production" turns unsigned webhooks into a hard configuration error.
    ENVIRONMENT: str = Field(default=os.getenv("ENVIRONMENT", os.getenv("NODE_ENV", "development")))
    LOG_LEVEL: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))

    APP_HOST: str = Field(default=os.getenv("APP_HOST", "0.0.0.0"))
    APP_PORT: int = Field(default=int(os.getenv("APP_PORT", "8000")))
    SITE_URL: str = Field(default=os.getenv("SITE_URL", "http://localhost:3000"))

    # Stripe
    # If set, webhook requests require a valid Stripe-Signature header.
    STRIPE_WEBHOOK_SECRET: str = Field(default=os.getenv("STRIPE_WEBHOOK_SECRET", ""))
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = Field(default=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300")))

    # Record store
    # "rest" talks PostgREST (Supabase); "firestore" uses firebase-admin.
    RECORD_STORE_BACKEND: str = Field(default=os.getenv("RECORD_STORE_BACKEND", "rest"))
    SUPABASE_URL: str = Field(default=os.getenv("SUPABASE_URL", ""))
    SUPABASE_SERVICE_ROLE_KEY: str = Field(default=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""))
    RECORD_STORE_TIMEOUT_SECONDS: float = Field(default=float(os.getenv("RECORD_STORE_TIMEOUT_SECONDS", "15")))
    RECORD_STORE_MAX_RETRIES: int = Field(default=int(os.getenv("RECORD_STORE_MAX_RETRIES", "3")))
    RECORD_STORE_RETRY_BASE_SECONDS: float = Field(default=float(os.getenv("RECORD_STORE_RETRY_BASE_SECONDS", "0.5")))
    FIREBASE_CREDENTIALS_PATH: str = Field(
        default=os.getenv("FIREBASE_CREDENTIALS_PATH", str(_APPS_DIR / "serviceAccountKey.json"))
    )

    # Shared secret for internal calls (notification sender, cron endpoints).
    INTERNAL_SECRET: str = Field(default=os.getenv("INTERNAL_SECRET", os.getenv("CRON_SECRET", "")))

    # Billing
    BILLING_CURRENCY: str = Field(default=os.getenv("BILLING_CURRENCY", "eur"))
    BILLING_VAT_PERCENT: int = Field(default=int(os.getenv("BILLING_VAT_PERCENT", "21")))
    # Skip renewal/failure events older than the last one applied to a subscription.
    BILLING_ENFORCE_EVENT_ORDER: bool = Field(
        default=(os.getenv("BILLING_ENFORCE_EVENT_ORDER", "true").strip().lower() == "true")
    )
    UPDATE_CARD_PATH: str = Field(default=os.getenv("UPDATE_CARD_PATH", "/dashboard/suscripcion"))
    RESUBSCRIBE_PATH: str = Field(default=os.getenv("RESUBSCRIBE_PATH", "/precios"))

    # Founding plan expiry sweep
    ENABLE_EXPIRY_SWEEP: bool = Field(default=(os.getenv("ENABLE_EXPIRY_SWEEP", "false").strip().lower() == "true"))
    EXPIRY_SWEEP_MINUTES: int = Field(default=int(os.getenv("EXPIRY_SWEEP_MINUTES", "60")))

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.strip().lower() == "production"

    def site_link(self, path: str) -> str:
        return f"{self.SITE_URL.rstrip('/')}/{path.lstrip('/')}"


settings = Settings()
