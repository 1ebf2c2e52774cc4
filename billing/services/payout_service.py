"""
Payout fairness: platform commission is charged only on the real-cash part of what the payer spent.

Promotional wallet credit ("pay X, get 2X") is not revenue. An expert paid from a wallet that is
half bonus money earns on half the face value. Legacy wallets without a real_balance count as all cash.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from billing import config
from billing.services.pricing import round_money, to_decimal

ONE = Decimal("1")
ZERO = Decimal("0")


@dataclass(frozen=True)
class PayoutBreakdown:
    gateway_amount: Decimal
    wallet_deduction: Decimal
    real_ratio: Decimal
    effective_real_amount: Decimal
    fee_percent: Decimal
    fee_amount: Decimal
    expert_earnings: Decimal


def _clamp_ratio(ratio) -> Decimal:
    ratio = to_decimal(ratio)
    if ratio < ZERO:
        return ZERO
    if ratio > ONE:
        return ONE
    return ratio


def calculate_payout_breakdown(gateway_amount, wallet_deduction, real_ratio, fee_percent) -> PayoutBreakdown:
    gateway_amount = to_decimal(gateway_amount)
    wallet_deduction = to_decimal(wallet_deduction)
    ratio = _clamp_ratio(real_ratio)
    fee_percent = to_decimal(fee_percent)

    effective_real = gateway_amount + wallet_deduction * ratio
    fee = round_money(effective_real * fee_percent / Decimal("100"))
    earnings = round_money(effective_real - fee)
    return PayoutBreakdown(
        gateway_amount=round_money(gateway_amount),
        wallet_deduction=round_money(wallet_deduction),
        real_ratio=ratio,
        effective_real_amount=round_money(effective_real),
        fee_percent=fee_percent,
        fee_amount=fee,
        expert_earnings=earnings,
    )


def extract_real_ratio(total_balance, real_balance: Optional[Decimal]) -> Decimal:
    """1 for legacy wallets (no real_balance) and empty wallets, else real/total clamped to [0, 1]."""
    if real_balance is None:
        return ONE
    total_balance = to_decimal(total_balance)
    if total_balance <= ZERO:
        return ONE
    return _clamp_ratio(to_decimal(real_balance) / total_balance)


def real_balance_after_debit(balance, real_balance: Optional[Decimal], debit_amount) -> Optional[Decimal]:
    """
    Real balance left after debiting `debit_amount` from `balance`.

    The real part shrinks in proportion to the ratio before the debit and never exceeds the
    new total. A legacy wallet (None) stays legacy.

    Overdraft is the one exception to real_balance <= balance: when the debit takes the balance
    below zero the real part floors at 0.00, since real cash cannot be negative.
    """
    if real_balance is None:
        return None
    balance = to_decimal(balance)
    real_balance = to_decimal(real_balance)
    debit_amount = to_decimal(debit_amount)
    if balance <= ZERO or debit_amount <= ZERO:
        return round_money(max(ZERO, real_balance))

    ratio = extract_real_ratio(balance, real_balance)
    new_real = real_balance - debit_amount * ratio
    ceiling = max(ZERO, balance - debit_amount)
    return round_money(min(max(ZERO, new_real), ceiling))


def real_balance_credit_for(transaction_type: str, amount) -> Decimal:
    """Cash-equivalent credits (recharge, refund) raise the real balance; promotional ones do not."""
    if transaction_type in config.REAL_CASH_TRANSACTION_TYPES:
        return round_money(amount)
    return round_money(0)
