"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .currency import Currency


class LedgerConfig(BaseSettings):
    """Bank ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="BANK_LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///bank_ledger.db"  # or memory://

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Business rules configuration
    currency: str = "USD"
    min_term_months: int = 6
    max_term_months: int = 120
    checking_transaction_fee_rate: str = "0.005"  # 0.5% per transaction
    savings_interest_rate: str = "0.045"  # 4.5% annual, stored only
    overdraft_policy: str = "reject"  # reject or allow
    repayment_debit_policy: str = "applied"  # applied or requested

    # Concurrency configuration
    lock_timeout_seconds: float = 5.0

    # Feature flags
    enable_audit_logging: bool = True

    @field_validator("overdraft_policy")
    @classmethod
    def _check_overdraft_policy(cls, value: str) -> str:
        value = value.lower()
        if value not in ("reject", "allow"):
            raise ValueError("overdraft_policy must be 'reject' or 'allow'")
        return value

    @field_validator("repayment_debit_policy")
    @classmethod
    def _check_debit_policy(cls, value: str) -> str:
        value = value.lower()
        if value not in ("applied", "requested"):
            raise ValueError("repayment_debit_policy must be 'applied' or 'requested'")
        return value

    @field_validator("currency")
    @classmethod
    def _check_currency(cls, value: str) -> str:
        value = value.upper()
        if value not in Currency.__members__:
            raise ValueError(f"Unsupported currency '{value}'")
        return value

    @property
    def currency_enum(self) -> Currency:
        return Currency[self.currency]

    @property
    def checking_fee_rate(self) -> Decimal:
        return Decimal(self.checking_transaction_fee_rate)

    @property
    def savings_rate(self) -> Decimal:
        return Decimal(self.savings_interest_rate)


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
