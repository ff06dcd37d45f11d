from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field(..., alias="DATABASE_URL")

    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(15, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Payment gateway (Paystack). The secret key also signs webhooks.
    paystack_secret_key: str = Field(..., alias="PAYSTACK_SECRET_KEY")
    paystack_base_url: str = Field("https://api.paystack.co", alias="PAYSTACK_BASE_URL")
    paystack_callback_url: Optional[str] = Field(None, alias="PAYSTACK_CALLBACK_URL")
    gateway_timeout_seconds: float = Field(20.0, alias="GATEWAY_TIMEOUT_SECONDS")

    # Single-currency billing; minor unit exponent 2 => kobo for NGN
    currency: str = Field("NGN", alias="BILLING_CURRENCY")
    currency_minor_unit_exponent: int = Field(2, alias="BILLING_MINOR_UNIT_EXPONENT")
    # Flat platform fee added to every gateway fee payment, in minor units (20000 kobo = 200 NGN)
    platform_fee_minor: int = Field(20000, alias="PLATFORM_FEE_MINOR")
    trial_days: int = Field(7, alias="TRIAL_DAYS")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
