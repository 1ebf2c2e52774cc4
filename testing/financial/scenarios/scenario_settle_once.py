from decimal import Decimal

from billing.services.earnings_service import get_earnings_balance
from billing.services.wallet_service import get_wallet_balance
from testing.financial.base import (
    SCENARIO_CURRENCY,
    cleanup_scenario_data,
    create_connected_order,
    ensure_test_users,
    fund_wallet,
    settlement_service,
)


def run():
    print("Running: scenario_settle_once")
    cleanup_scenario_data("settle_once")
    expert, client = ensure_test_users()
    fund_wallet("100.00")
    order = create_connected_order(scenario_name="settle_once")

    result = settlement_service().settle(order.call_reference)
    if result.status != "completed":
        raise Exception(f"Expected completed, got {result.status}: {result.message}")
    if result.billable_seconds != 240 or result.cost != Decimal("20.00"):
        raise Exception(f"Expected 240s / 20.00, got {result.billable_seconds}s / {result.cost}")
    if get_wallet_balance(client, expert, SCENARIO_CURRENCY) != Decimal("80.00"):
        raise Exception("Expected wallet balance 80.00 after settlement.")
    if get_earnings_balance(expert, SCENARIO_CURRENCY) != Decimal("18.00"):
        raise Exception("Expected expert earnings 18.00 after settlement.")
    expert.refresh_from_db()
    if expert.is_busy:
        raise Exception("Expected expert to be FREE after settlement.")
    print("✓ Passed")
