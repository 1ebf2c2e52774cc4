from decimal import Decimal

from billing.models import ExpertEarning, ExpertWallet
from testing.financial.base import cleanup_scenario_data, create_connected_order, fund_wallet, settlement_service


def run():
    """Pay 100, get 100 bonus: the expert earns on the real half of what the call consumed."""
    print("Running: scenario_promotional_wallet_payout")
    cleanup_scenario_data("promotional_wallet_payout")
    fund_wallet("100.00", bonus="100.00")
    order = create_connected_order(
        scenario_name="promotional_wallet_payout",
        rate_per_minute="10.00",
        cap_seconds=600,
        user_spans=((0, 600),),
        expert_spans=((0, 600),),
    )

    result = settlement_service().settle(order.call_reference)
    if result.status != "completed" or result.cost != Decimal("100.00"):
        raise Exception(f"Expected completed 100.00, got {result.status} {result.cost}")
    earning = ExpertEarning.objects.get(order=order)
    if earning.gross_amount != Decimal("50.00") or earning.platform_fee != Decimal("5.00") or earning.net_amount != Decimal("45.00"):
        raise Exception(f"Unexpected payout {earning.gross_amount}/{earning.platform_fee}/{earning.net_amount}")
    wallet = ExpertWallet.objects.get(user=order.user, expert=order.expert, currency=order.currency)
    if wallet.balance != Decimal("100.00") or wallet.real_balance != Decimal("50.00"):
        raise Exception(f"Unexpected wallet {wallet.balance}/{wallet.real_balance}")
    print("✓ Passed")
