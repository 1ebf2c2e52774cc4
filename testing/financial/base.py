from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from accounts.models import CustomUser, ExpertProfile, UserProfile
from billing.config import SettlementConfig
from billing.models import ExpertEarning, ExpertEarningsAccount, ExpertWallet, WalletTransaction
from billing.services.settlement_service import SettlementService
from billing.services.wallet_service import recharge_wallet
from consultations.lifecycle import OrderStatus
from consultations.models import ConsultationOrder
from consultations.presence import PresenceInterval

SCENARIO_TAG_PREFIX = "scn"
SCENARIO_CURRENCY = "INR"


def ensure_test_users():
    expert_email = "test_expert@local.test"
    client_email = "test_client@local.test"

    expert_user, _ = CustomUser.objects.get_or_create(
        email=expert_email,
        defaults={"is_email_verified": True, "is_active": True},
    )
    client_user, _ = CustomUser.objects.get_or_create(
        email=client_email,
        defaults={"is_email_verified": True, "is_active": True},
    )

    expert_profile, _ = ExpertProfile.objects.get_or_create(
        user=expert_user,
        defaults={"first_name": "Test", "last_name": "Expert"},
    )
    expert_profile.consultation_status = ExpertProfile.CONSULTATION_FREE
    expert_profile.platform_fee_config = {}
    expert_profile.save(update_fields=["consultation_status", "platform_fee_config"])

    client_profile, _ = UserProfile.objects.get_or_create(
        user=client_user,
        defaults={"first_name": "Test", "last_name": "Client"},
    )
    return expert_profile, client_profile


def assert_scenarios_enabled():
    if not settings.ALLOW_TEST_SCENARIOS:
        raise Exception("Test scenarios disabled in this environment.")


def scenario_order_id(scenario_name):
    return f"{SCENARIO_TAG_PREFIX}-{scenario_name}"


@transaction.atomic()
def cleanup_scenario_data(scenario_name):
    """Remove the scenario's order and reset the test wallet and earnings so runs are repeatable."""
    expert, client = ensure_test_users()
    orders = ConsultationOrder.objects.filter(order_id=scenario_order_id(scenario_name))
    order_ids = list(orders.values_list("id", flat=True))
    if order_ids:
        WalletTransaction.objects.filter(order_id__in=order_ids).delete()
        ExpertEarning.objects.filter(order_id__in=order_ids).delete()
        orders.delete()
    WalletTransaction.objects.filter(user=client, expert=expert).delete()
    ExpertWallet.objects.filter(user=client, expert=expert).delete()
    ExpertEarningsAccount.objects.filter(expert=expert).delete()


def fund_wallet(amount, bonus=None):
    expert, client = ensure_test_users()
    return recharge_wallet(client, expert, SCENARIO_CURRENCY, Decimal(str(amount)), bonus_amount=bonus)


def make_legacy_wallet(balance):
    expert, client = ensure_test_users()
    wallet, _ = ExpertWallet.objects.update_or_create(
        user=client,
        expert=expert,
        currency=SCENARIO_CURRENCY,
        defaults={"balance": Decimal(str(balance)), "real_balance": None},
    )
    return wallet


def _intervals(spans, base):
    return [
        PresenceInterval(
            joined_at=base + timedelta(seconds=start),
            left_at=base + timedelta(seconds=end),
        ).to_dict()
        for start, end in spans
    ]


@transaction.atomic()
def create_connected_order(
    *,
    scenario_name,
    rate_per_minute="5.00",
    cap_seconds=600,
    user_spans=((0, 300),),
    expert_spans=((60, 360),),
    fee_percent="10",
):
    """CONNECTED order with stored presence (seconds relative to the call start)."""
    expert, client = ensure_test_users()
    base = timezone.now() - timedelta(hours=1)
    order = ConsultationOrder.objects.create(
        order_id=scenario_order_id(scenario_name),
        user=client,
        expert=expert,
        status=OrderStatus.CONNECTED,
        expert_rate_per_minute=Decimal(rate_per_minute),
        currency=SCENARIO_CURRENCY,
        max_allowed_duration=cap_seconds,
        platform_fee_percent=Decimal(fee_percent),
        start_time=base,
        both_participants_joined_at=base,
        end_time=base + timedelta(seconds=cap_seconds),
        user_intervals=_intervals(user_spans, base),
        expert_intervals=_intervals(expert_spans, base),
    )
    expert.consultation_status = ExpertProfile.CONSULTATION_BUSY
    expert.save(update_fields=["consultation_status"])
    return order


def settlement_service(timeline_client=None):
    return SettlementService(config=SettlementConfig.from_settings(), timeline_client=timeline_client)
