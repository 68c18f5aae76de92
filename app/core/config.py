from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"
    APP_NAME: str = "JT Booking API"
    LOG_LEVEL: str = "INFO"
    # Comma-separated origins for CORS. If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""

    SECRET_KEY: str = "dev-only-change-me"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    DATABASE_URL: str = "sqlite:///./jt_booking.db"

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v

    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_SOCKET_TIMEOUT: float = 1.0
    # After a failed call the redis client is skipped for this long before retrying
    CACHE_RETRY_AFTER_SECONDS: int = 30

    # Ephemeral state windows
    OTP_TTL_SECONDS: int = 900
    OFFER_VERIFY_TTL_SECONDS: int = 600
    BOOKING_HOLD_MINUTES: int = 60
    BOOKING_CACHE_TTL_SECONDS: int = 600
    BOOKING_MAX_MONTHS_AHEAD: int = 11

    # Upper bound on a single provider/gateway round-trip
    PROVIDER_TIMEOUT_SECONDS: int = 25

    # Amadeus Self-Service (flight offers price + orders)
    AMADEUS_HOST: str = "test.api.amadeus.com"
    AMADEUS_CLIENT_ID: str = ""
    AMADEUS_CLIENT_SECRET: str = ""

    # Paystack
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_SECRET_KEY: str = ""
    # If empty, webhooks are accepted unsigned (bootstrap mode)
    PAYSTACK_WEBHOOK_SECRET: str = ""
    PAYMENT_CALLBACK_URL: str = ""

    # Registered bookings get a provider order as soon as payment settles
    CONFIRM_ORDER_ON_PAYMENT: bool = True

    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 25
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = "noreply@joshtravels.local"

    SENDGRID_API_KEY: str = ""
    SENDGRID_FROM_EMAIL: str = ""

    # E-tickets
    ETICKET_BASE_URL: str = "http://localhost:8000/e-tickets"
    TICKET_LOCAL_DIR: str = "./data/tickets"


settings = Settings()
