"""
Runtime settings.

Values come from the environment (optionally seeded from a ``.env`` file).
Request handlers get them through ``Depends(get_settings)`` so tests can
swap in their own instance.
"""
import os
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "shop"

    jwt_secret: str = "devsecret"
    jwt_algorithm: str = "HS256"

    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_api_url: str = "https://api.razorpay.com"
    gateway_timeout: float = 10.0
    currency: str = "INR"

    shipping_charge: float = 15
    delivery_charge: float = 50
    total_tolerance: float = 2
    checkout_lock_seconds: int = 30
    use_transactions: bool = False
    default_country: str = "India"

    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.model_fields["database_url"].default),
            database_name=os.getenv("DATABASE_NAME", cls.model_fields["database_name"].default),
            jwt_secret=os.getenv("JWT_SECRET", "devsecret"),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            razorpay_api_url=os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com"),
            gateway_timeout=float(os.getenv("GATEWAY_TIMEOUT", "10")),
            currency=os.getenv("CURRENCY", "INR"),
            shipping_charge=float(os.getenv("SHIPPING_CHARGE", "15")),
            delivery_charge=float(os.getenv("DELIVERY_CHARGE", "50")),
            total_tolerance=float(os.getenv("TOTAL_TOLERANCE", "2")),
            checkout_lock_seconds=int(os.getenv("CHECKOUT_LOCK_SECONDS", "30")),
            use_transactions=_env_bool("USE_TRANSACTIONS"),
            default_country=os.getenv("DEFAULT_COUNTRY", "India"),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
