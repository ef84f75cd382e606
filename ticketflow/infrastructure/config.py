# ticketflow/infrastructure/config.py

from dataclasses import dataclass
from decimal import Decimal
import os

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    razorpay_key_id: str | None = None
    razorpay_key_secret: str | None = None
    razorpay_webhook_secret: str | None = None
    payment_currency: str = "INR"
    platform_fee_percent: Decimal = Decimal("3")
    # Razorpay keeps the original created_at across its 24h retry schedule.
    webhook_tolerance_seconds: int = 86400
    processor_timeout_seconds: float = 10.0
    public_base_url: str = "http://localhost:8000"
    auth_jwt_secret: str | None = None
    auth_jwt_audience: str = "authenticated"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID"),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET"),
            razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET"),
            payment_currency=os.getenv("PAYMENT_CURRENCY", "INR"),
            platform_fee_percent=Decimal(os.getenv("PLATFORM_FEE_PERCENT", "3")),
            webhook_tolerance_seconds=int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "86400")),
            processor_timeout_seconds=float(os.getenv("PROCESSOR_TIMEOUT_SECONDS", "10")),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
            auth_jwt_secret=os.getenv("AUTH_JWT_SECRET"),
            auth_jwt_audience=os.getenv("AUTH_JWT_AUDIENCE", "authenticated"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def get_settings() -> Settings:
    return Settings.from_env()
