from billing.models import ExpertEarning
from testing.financial.base import cleanup_scenario_data, create_connected_order, fund_wallet, settlement_service


def run():
    print("Running: scenario_double_settlement_guard")
    cleanup_scenario_data("double_settlement_guard")
    fund_wallet("100.00")
    order = create_connected_order(scenario_name="double_settlement_guard")
    service = settlement_service()

    first = service.settle(order.call_reference)
    order.refresh_from_db()
    snapshot = (order.duration_seconds, order.cost, order.platform_fee_amount, order.expert_earnings)
    second = service.settle(order.call_reference)
    order.refresh_from_db()

    if first.status != "completed" or second.status != "skipped":
        raise Exception(f"Expected completed then skipped, got {first.status} then {second.status}")
    if (order.duration_seconds, order.cost, order.platform_fee_amount, order.expert_earnings) != snapshot:
        raise Exception("Second settlement changed the order.")
    if ExpertEarning.objects.filter(order=order).count() != 1:
        raise Exception("Expected exactly one earnings entry.")
    print("✓ Passed")
