from billing.models import ExpertEarning, WalletTransaction
from billing.services.call_timeline_service import TimelineUnavailable
from testing.financial.base import cleanup_scenario_data, create_connected_order, fund_wallet, settlement_service


class ReentrantTimelineClient:
    """Runs a competing settlement the first time the timeline is requested."""

    def __init__(self):
        self.service = None
        self.inner_result = None

    def get_presence_timeline(self, call_reference):
        if self.inner_result is None:
            self.inner_result = "pending"
            self.inner_result = self.service.settle(call_reference)
        raise TimelineUnavailable("timeline not used in this scenario")


def run():
    print("Running: scenario_race_loss")
    cleanup_scenario_data("race_loss")
    fund_wallet("100.00")
    order = create_connected_order(scenario_name="race_loss")
    order.user_intervals = None
    order.expert_intervals = None
    order.save(update_fields=["user_intervals", "expert_intervals"])

    client = ReentrantTimelineClient()
    service = settlement_service(timeline_client=client)
    client.service = service
    outer = service.settle(order.call_reference)

    if client.inner_result.status != "completed":
        raise Exception(f"Expected inner settlement completed, got {client.inner_result.status}")
    if outer.status != "skipped":
        raise Exception(f"Expected outer settlement skipped, got {outer.status}")
    if ExpertEarning.objects.filter(order=order).count() != 1:
        raise Exception("Expected exactly one earnings entry.")
    if WalletTransaction.objects.filter(order=order).count() != 1:
        raise Exception("Expected exactly one wallet deduction.")
    print("✓ Passed")
