from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Giving Webhooks"
    ENVIRONMENT: str = "production"

    # Database
    DATABASE_URL: str = "postgresql://localhost/giving"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""  # Must be set via environment variable
    STRIPE_SIGNATURE_TOLERANCE_SECONDS: int = 300  # 0 disables the replay window

    # Resend Email
    RESEND_API_KEY: str = ""
    NOTICE_FROM_EMAIL: str = "Giving <noreply@church.app>"
    RECEIPT_FROM_DOMAIN: str = "church.app"  # Used when a tenant has no domain
    DEFAULT_ORGANIZATION_NAME: str = "Our Church"

    # Links in donor-facing emails
    APP_BASE_URL: str = "http://localhost:3000"

    # Sentry
    SENTRY_DSN: str = ""

    # Deferred effects / reprocessing
    OUTBOX_MAX_ATTEMPTS: int = 5
    REPROCESS_AFTER_MINUTES: int = 10
    REPROCESS_MAX_ATTEMPTS: int = 5  # Sweep stops replaying an event after this many failures

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
