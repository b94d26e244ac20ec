from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # JazzCash mobile wallet
    jazzcash_merchant_id: str = ""
    jazzcash_password: str = ""
    jazzcash_integrity_salt: str = ""
    jazzcash_payment_url: str = (
        "https://sandbox.jazzcash.com.pk/ApplicationAPI/API/2.0/Purchase/DoMWalletTransaction"
    )
    jazzcash_inquiry_url: str = (
        "https://sandbox.jazzcash.com.pk/ApplicationAPI/API/PaymentInquiry/Inquire"
    )
    jazzcash_return_url: str = "https://peace-market.com/payment-callback"
    jazzcash_currency: str = "PKR"
    jazzcash_version: str = "1.1"
    jazzcash_txn_expiry_minutes: int = Field(default=60, gt=0)
    gateway_timeout_seconds: float = Field(default=20.0, gt=0)

    # Settlement reconciliation
    initial_poll_delay_seconds: int = Field(default=600, ge=0)
    retry_delay_seconds: int = Field(default=300, gt=0)
    scan_interval_seconds: float = Field(default=60.0, gt=0)
    max_inquiry_attempts: Optional[int] = Field(default=None, gt=0)
    max_pending_age_hours: Optional[float] = Field(default=None, gt=0)

    # Subscriptions and referrals
    subscription_duration_days: int = Field(default=30, gt=0)
    subscription_expiry_scan_seconds: float = Field(default=86400.0, gt=0)
    referral_code_requires_active_subscription: bool = True

    # Wallet credit and withdrawals
    wallet_credit_requires_active_subscription: bool = True
    withdrawal_payout_ratio: Decimal = Field(default=Decimal("0.9"), gt=0, le=1)
    withdrawal_weekday: Optional[int] = Field(default=None, ge=0, le=6)

    log_level: str = "INFO"
    debug: bool = False
    run_workers: bool = True

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()


@lru_cache()
def get_settings() -> Settings:
    return Settings()
