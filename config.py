"""
Runtime settings

Read once from the environment (and a local .env file) at start-up and handed
to the rest of the app through `Depends(get_settings)`. Nothing else in the
codebase reads os.environ directly.
"""

import math
import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: str = "agrolink"

    commission_rate: float = Field(0.0, ge=0)
    delivery_fee: float = Field(500.0, ge=0)
    low_stock_threshold: int = Field(3, ge=0)

    cors_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:5174"]
    )
    token_ttl_days: int = 7
    log_level: str = "INFO"

    # Mail
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    mail_from: str = "AgroLink <no-reply@agrolink.local>"
    frontend_url: str = "http://localhost:5173"

    # Asset store
    cloudinary_cloud_name: Optional[str] = None
    cloudinary_api_key: Optional[str] = None
    cloudinary_api_secret: Optional[str] = None

    @property
    def mail_enabled(self) -> bool:
        return bool(self.smtp_host)

    @property
    def assets_enabled(self) -> bool:
        return bool(
            self.cloudinary_cloud_name
            and self.cloudinary_api_key
            and self.cloudinary_api_secret
        )


def parse_commission_rate(raw: Optional[str]) -> float:
    """Commission as a fraction; anything unusable means no commission."""
    try:
        rate = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(rate) or rate < 0:
        return 0.0
    return rate


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def load_settings() -> Settings:
    load_dotenv()
    origins = [
        os.getenv("CLIENT_URL", "http://localhost:5173"),
        os.getenv("CLIENT_URL_ALT", "http://localhost:5174"),
    ]
    try:
        delivery_fee = float(os.getenv("DELIVERY_FEE", 500))
    except ValueError:
        delivery_fee = 500.0
    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        database_name=os.getenv("DATABASE_NAME", "agrolink"),
        commission_rate=parse_commission_rate(os.getenv("COMMISSION_RATE")),
        delivery_fee=max(delivery_fee, 0.0),
        low_stock_threshold=max(_int_env("LOW_STOCK_THRESHOLD", 3), 0),
        cors_origins=origins,
        token_ttl_days=_int_env("TOKEN_TTL_DAYS", 7),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        smtp_host=os.getenv("SMTP_HOST") or None,
        smtp_port=_int_env("SMTP_PORT", 587),
        smtp_user=os.getenv("SMTP_USER") or None,
        smtp_password=os.getenv("SMTP_PASSWORD") or None,
        mail_from=os.getenv("MAIL_FROM", "AgroLink <no-reply@agrolink.local>"),
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173"),
        cloudinary_cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME") or None,
        cloudinary_api_key=os.getenv("CLOUDINARY_API_KEY") or None,
        cloudinary_api_secret=os.getenv("CLOUDINARY_API_SECRET") or None,
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
