from decimal import Decimal

from billing.models import ExpertEarning, WalletTransaction
from billing.services.call_timeline_service import CallTimeline
from testing.financial.base import cleanup_scenario_data, create_connected_order, fund_wallet, settlement_service


class EmptyTimelineClient:
    """A call that was created but where nobody overlapped."""

    def get_presence_timeline(self, call_reference):
        return CallTimeline(found=True, participants=[])


def run():
    print("Running: scenario_zero_charge")
    cleanup_scenario_data("zero_charge")
    fund_wallet("100.00")
    order = create_connected_order(scenario_name="zero_charge", user_spans=(), expert_spans=())

    result = settlement_service(timeline_client=EmptyTimelineClient()).settle(order.call_reference)
    order.refresh_from_db()
    if result.status != "zero_charge":
        raise Exception(f"Expected zero_charge, got {result.status}")
    if order.status != "COMPLETED" or order.cost != Decimal("0.00") or order.duration_seconds != 0:
        raise Exception("Expected COMPLETED order with zero monetary fields.")
    if WalletTransaction.objects.filter(order=order).exists() or ExpertEarning.objects.filter(order=order).exists():
        raise Exception("Zero charge must not touch wallet or earnings.")
    print("✓ Passed")
