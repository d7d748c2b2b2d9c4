"""Configuration settings for the settlement engine."""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SettlementConfig(BaseSettings):
    """Engine settings loaded from environment (prefix ``MARKETCORE_``)."""

    model_config = SettingsConfigDict(
        env_prefix="MARKETCORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra env vars not in model
    )

    # Errands
    max_active_errands_per_helper: int = Field(default=3, ge=1)

    # Credits
    credit_expiration_days: int = Field(default=90, ge=1)
    referrer_credit_amount: Decimal = Decimal("5.00")  # Paid when the referee first orders
    referee_credit_amount: Decimal = Decimal("3.00")

    # Withdrawals
    minimum_withdrawal: Decimal = Decimal("50.00")
    withdrawal_fee: Decimal = Decimal("0.00")

    # Side-effect retries (payment capture/refund, payout credit issuance)
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=0.5, ge=0)
    retry_backoff_factor: float = Field(default=2.0, ge=1)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)

    # Storage
    database_path: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_secret_key: Optional[str] = None

    # Collaborators for the CLI, as "package.module:attribute"
    payment_processor: Optional[str] = None
    notification_dispatcher: Optional[str] = None

    log_level: str = "WARNING"


@lru_cache
def get_config() -> SettlementConfig:
    """Get cached settings instance."""
    return SettlementConfig()
