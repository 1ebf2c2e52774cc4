"""
Billing configuration: single source of truth for consultation money constants.

All monetary amounts are Decimal with 2 decimal places, rounded half-up.
Safe to import from views and services. Runtime knobs come from settings via SettlementConfig.
"""
from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings

# Currencies a wallet or earnings account may hold
SUPPORTED_CURRENCIES = ("INR", "USD", "EUR", "GBP")

DEFAULT_CURRENCY = "INR"

# Platform commission taken from each consultation (10 = 10%)
DEFAULT_PLATFORM_FEE_PERCENT = Decimal("10")

# Wallet credits that are backed by real cash. Everything else (BONUS, CASHBACK,
# REFERRAL_BONUS) is promotional and never raises the wallet's real balance.
REAL_CASH_TRANSACTION_TYPES = frozenset({"RECHARGE", "REFUND"})

PROMOTIONAL_TRANSACTION_TYPES = frozenset({"BONUS", "CASHBACK", "REFERRAL_BONUS"})

# Optimistic retries of one settlement transaction before giving up
DEFAULT_TRANSACTION_ATTEMPTS = 5

# Stripe amounts are in the smallest currency unit
STRIPE_MINOR_UNITS = 100


@dataclass(frozen=True)
class SettlementConfig:
    """Immutable settlement settings, built once and handed to SettlementService."""

    default_currency: str = DEFAULT_CURRENCY
    default_platform_fee_percent: Decimal = DEFAULT_PLATFORM_FEE_PERCENT
    transaction_attempts: int = DEFAULT_TRANSACTION_ATTEMPTS
    stale_grace_seconds: int = 120

    @classmethod
    def from_settings(cls) -> "SettlementConfig":
        currency = (getattr(settings, "SETTLEMENT_DEFAULT_CURRENCY", "") or DEFAULT_CURRENCY).upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise ValueError(f"Unsupported SETTLEMENT_DEFAULT_CURRENCY: {currency}")
        fee = Decimal(str(getattr(settings, "SETTLEMENT_DEFAULT_PLATFORM_FEE_PERCENT", DEFAULT_PLATFORM_FEE_PERCENT)))
        if fee < 0 or fee > 100:
            raise ValueError(f"SETTLEMENT_DEFAULT_PLATFORM_FEE_PERCENT out of range: {fee}")
        return cls(
            default_currency=currency,
            default_platform_fee_percent=fee,
            transaction_attempts=max(1, int(getattr(settings, "SETTLEMENT_TRANSACTION_ATTEMPTS", DEFAULT_TRANSACTION_ATTEMPTS))),
            stale_grace_seconds=max(0, int(getattr(settings, "CONSULTATION_STALE_GRACE_SECONDS", 120))),
        )
