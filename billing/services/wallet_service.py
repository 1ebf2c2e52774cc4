"""
Payer wallet service. All ExpertWallet balance changes go through here and create a WalletTransaction.
Never modify ExpertWallet.balance / real_balance outside this module.
"""
import logging
from decimal import Decimal

from django.db import transaction

from accounts.models import ExpertProfile, UserProfile
from billing import config
from billing.models import ExpertWallet, TransactionSource, TransactionType, WalletTransaction
from billing.services.payout_service import real_balance_after_debit, real_balance_credit_for
from billing.services.pricing import round_money, to_decimal

logger = logging.getLogger(__name__)


class WalletError(Exception):
    """Raised when wallet operation fails (e.g. unsupported currency, non-positive amount)."""
    pass


def validate_currency(currency: str) -> str:
    code = (currency or "").strip().upper()
    if code not in config.SUPPORTED_CURRENCIES:
        raise WalletError(f"Unsupported currency: {currency!r}")
    return code


def lock_wallet(user_profile: UserProfile, expert_profile: ExpertProfile, currency: str) -> ExpertWallet:
    """
    Return the payer's wallet for this expert and currency, row-locked for the current transaction.
    A missing wallet is created empty with real_balance NULL. Must be called inside transaction.atomic().
    """
    currency = validate_currency(currency)
    wallet, created = ExpertWallet.objects.select_for_update().get_or_create(
        user=user_profile,
        expert=expert_profile,
        currency=currency,
        defaults={"balance": Decimal("0.00"), "real_balance": None},
    )
    if created:
        logger.info(
            "lock_wallet: created wallet user=%s expert=%s currency=%s",
            user_profile.pk, expert_profile.pk, currency,
        )
    return wallet


def get_wallet_balance(user_profile: UserProfile, expert_profile: ExpertProfile, currency: str) -> Decimal:
    currency = validate_currency(currency)
    wallet = ExpertWallet.objects.filter(user=user_profile, expert=expert_profile, currency=currency).first()
    if wallet is None:
        return Decimal("0.00")
    return wallet.balance


@transaction.atomic()
def credit_wallet(
    user_profile: UserProfile,
    expert_profile: ExpertProfile,
    currency: str,
    amount,
    transaction_type: str,
    source: str = TransactionSource.PAYMENT,
    payment=None,
    description: str = "",
) -> ExpertWallet:
    """
    Add credit to a payer's wallet. Creates WalletTransaction (positive amount), increases balance.

    Only cash-equivalent kinds (RECHARGE, REFUND) raise real_balance. A legacy wallet gets its
    real_balance initialised to the old balance first, so earlier credit is never penalised.
    """
    amount = round_money(amount)
    if amount <= 0:
        raise WalletError("credit_wallet requires positive amount")
    if transaction_type == TransactionType.CONSULTATION_DEDUCTION:
        raise WalletError("credit_wallet cannot record a deduction")

    wallet = lock_wallet(user_profile, expert_profile, currency)
    old_balance = wallet.balance
    real_balance = wallet.real_balance if wallet.real_balance is not None else old_balance

    wallet.balance = round_money(old_balance + amount)
    wallet.real_balance = round_money(real_balance + real_balance_credit_for(transaction_type, amount))
    wallet.save(update_fields=["balance", "real_balance", "updated_at"])

    WalletTransaction.objects.create(
        user=user_profile,
        expert=expert_profile,
        type=transaction_type,
        source=source,
        amount=amount,
        currency=wallet.currency,
        payment=payment,
        description=description[:255],
    )
    logger.info(
        "credit_wallet: %s %s %s user=%s expert=%s balance=%s real_balance=%s",
        transaction_type, amount, wallet.currency, user_profile.pk, expert_profile.pk,
        wallet.balance, wallet.real_balance,
    )
    return wallet


@transaction.atomic()
def recharge_wallet(
    user_profile: UserProfile,
    expert_profile: ExpertProfile,
    currency: str,
    amount,
    bonus_amount=None,
    payment=None,
) -> ExpertWallet:
    """Cash recharge plus an optional promotional bonus, committed together."""
    wallet = credit_wallet(
        user_profile,
        expert_profile,
        currency,
        amount,
        TransactionType.RECHARGE,
        source=TransactionSource.GATEWAY,
        payment=payment,
        description="Wallet recharge",
    )
    bonus = round_money(bonus_amount or 0)
    if bonus > 0:
        wallet = credit_wallet(
            user_profile,
            expert_profile,
            currency,
            bonus,
            TransactionType.BONUS,
            source=TransactionSource.PROMOTION,
            payment=payment,
            description="Recharge bonus",
        )
    return wallet


def refund_to_wallet(
    user_profile: UserProfile,
    expert_profile: ExpertProfile,
    currency: str,
    amount,
    payment=None,
    description: str = "Refund",
) -> ExpertWallet:
    """Same as credit_wallet with type REFUND. Refunds count as real cash."""
    return credit_wallet(
        user_profile,
        expert_profile,
        currency,
        amount,
        TransactionType.REFUND,
        source=TransactionSource.GATEWAY,
        payment=payment,
        description=description,
    )


def debit_wallet_for_order(wallet: ExpertWallet, order, cost, billable_seconds: int) -> WalletTransaction:
    """
    Deduct a consultation charge from a wallet already locked by the caller's transaction.

    The balance may go negative (calls can outrun a prepaid balance); that is logged, not refused,
    because the call has already happened.
    """
    cost = round_money(cost)
    if cost <= 0:
        raise WalletError("debit_wallet_for_order requires positive cost")

    old_balance = wallet.balance
    new_balance = round_money(old_balance - cost)
    if new_balance < 0:
        logger.warning(
            "debit_wallet_for_order: wallet overdrawn order_id=%s balance=%s cost=%s",
            order.order_id, old_balance, cost,
        )
    wallet.real_balance = real_balance_after_debit(old_balance, wallet.real_balance, cost)
    wallet.balance = new_balance
    wallet.save(update_fields=["balance", "real_balance", "updated_at"])

    return WalletTransaction.objects.create(
        user_id=wallet.user_id,
        expert_id=wallet.expert_id,
        type=TransactionType.CONSULTATION_DEDUCTION,
        source=TransactionSource.PAYMENT,
        amount=-cost,
        currency=wallet.currency,
        order=order,
        duration_seconds=billable_seconds,
        rate_per_minute=to_decimal(order.expert_rate_per_minute),
        consultation_type=order.consultation_type or "",
        category=order.category or "",
        description=f"Consultation {order.order_id}"[:255],
    )
