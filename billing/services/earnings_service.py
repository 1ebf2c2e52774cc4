"""
Expert earnings service. All ExpertEarningsAccount changes go through this module.
Never modify an earnings balance directly outside this service.
"""
from decimal import Decimal

from accounts.models import ExpertProfile
from billing.models import ExpertEarning, ExpertEarningsAccount
from billing.services.pricing import round_money
from billing.services.wallet_service import validate_currency


class EarningsError(Exception):
    pass


def lock_earnings_account(expert_profile: ExpertProfile, currency: str) -> ExpertEarningsAccount:
    """Row-locked earnings account for (expert, currency); created empty when missing. Needs an open transaction."""
    account, _ = ExpertEarningsAccount.objects.select_for_update().get_or_create(
        expert=expert_profile,
        currency=validate_currency(currency),
        defaults={"balance": Decimal("0.00")},
    )
    return account


def record_order_earning(account: ExpertEarningsAccount, order, gross_amount, platform_fee, net_amount) -> ExpertEarning:
    """Append an ORDER_EARNING entry and raise the account balance. Caller holds the account lock."""
    gross_amount = round_money(gross_amount)
    platform_fee = round_money(platform_fee)
    net_amount = round_money(net_amount)
    if net_amount < 0:
        raise EarningsError("record_order_earning requires non-negative net_amount")
    if account.currency != order.currency:
        raise EarningsError(
            f"Earnings account currency {account.currency} does not match order currency {order.currency}"
        )

    entry = ExpertEarning.objects.create(
        expert_id=account.expert_id,
        type=ExpertEarning.TYPE_ORDER_EARNING,
        gross_amount=gross_amount,
        platform_fee=platform_fee,
        net_amount=net_amount,
        currency=account.currency,
        order=order,
        description=f"Consultation {order.order_id}"[:255],
    )
    account.balance = round_money(account.balance + net_amount)
    account.save(update_fields=["balance", "updated_at"])
    return entry


def get_earnings_balance(expert_profile: ExpertProfile, currency: str) -> Decimal:
    account = ExpertEarningsAccount.objects.filter(
        expert=expert_profile,
        currency=validate_currency(currency),
    ).first()
    if account is None:
        return Decimal("0.00")
    return account.balance
