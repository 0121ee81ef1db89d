from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    ENV: str = "prod"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str

    JWT_SECRET: str

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    ALLOWED_HOSTS: str = "localhost,127.0.0.1"
    SECURITY_HEADERS_ENABLED: bool = True

    # Billing
    BILLING_PROVIDER: str = "none"  # none|square
    BILLING_CURRENCY: str = "USD"
    PLATFORM_FEE_PERCENT: float = 20.0
    BILLING_PERIOD_MONTHS: int = 1

    BILLING_GATEWAY_TIMEOUT_SECONDS: float = 15.0
    BILLING_GATEWAY_MAX_ATTEMPTS: int = 3
    BILLING_GATEWAY_BACKOFF_SECONDS: float = 0.5

    BILLING_WEBHOOK_SIGNATURE_KEY: str | None = None
    BILLING_WEBHOOK_NOTIFICATION_URL: str = "https://api.creatorpay.app/payments/webhook"

    BILLING_PENDING_CHARGE_TTL_HOURS: int = 48

    # Renewals
    BILLING_SCHEDULER_ENABLED: bool = False
    BILLING_RENEWAL_CRON: str = "7 * * * *"
    BILLING_RENEWAL_JITTER_SECONDS: int = 120
    BILLING_RENEWAL_BATCH_LIMIT: int = 500
    BILLING_RENEWAL_RETRY_HOURS: int = 24

    # Square
    SQUARE_ACCESS_TOKEN: str | None = None
    SQUARE_LOCATION_ID: str | None = None
    SQUARE_ENVIRONMENT: str = "sandbox"  # sandbox|production
    SQUARE_API_VERSION: str = "2024-07-17"
    SQUARE_BASE_URL_PROD: str = "https://connect.squareup.com"
    SQUARE_BASE_URL_SANDBOX: str = "https://connect.squareupsandbox.com"

    PRESENCE_TTL_SECONDS: int = 90

    @model_validator(mode="after")
    def validate_billing(self):
        if not 0 <= self.PLATFORM_FEE_PERCENT <= 100:
            raise ValueError("PLATFORM_FEE_PERCENT must be between 0 and 100")
        if self.BILLING_PERIOD_MONTHS < 1 or self.BILLING_GATEWAY_MAX_ATTEMPTS < 1:
            raise ValueError("BILLING_PERIOD_MONTHS and BILLING_GATEWAY_MAX_ATTEMPTS must be positive")
        if self.ENV != "prod":
            return self
        if len(self.JWT_SECRET) < 32:
            raise ValueError("JWT_SECRET is too short for production")
        if self.BILLING_PROVIDER == "square":
            missing = [
                name
                for name in ("SQUARE_ACCESS_TOKEN", "SQUARE_LOCATION_ID", "BILLING_WEBHOOK_SIGNATURE_KEY")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(f"Missing production billing settings: {', '.join(missing)}")
            if self.SQUARE_ENVIRONMENT != "production":
                raise ValueError("SQUARE_ENVIRONMENT must be production when ENV=prod")
        return self

settings = Settings()
