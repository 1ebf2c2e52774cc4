from testing.financial.base import assert_scenarios_enabled
from testing.financial.scenarios import (
    scenario_double_settlement_guard,
    scenario_promotional_wallet_payout,
    scenario_race_loss,
    scenario_settle_once,
    scenario_zero_charge,
)

AVAILABLE_SCENARIOS = {
    "settle_once": scenario_settle_once,
    "double_settlement_guard": scenario_double_settlement_guard,
    "zero_charge": scenario_zero_charge,
    "promotional_wallet_payout": scenario_promotional_wallet_payout,
    "race_loss": scenario_race_loss,
}


def run_scenario(name):
    assert_scenarios_enabled()
    if name not in AVAILABLE_SCENARIOS:
        raise Exception(f"Unknown scenario '{name}'. Available: {', '.join(AVAILABLE_SCENARIOS.keys())}")
    AVAILABLE_SCENARIOS[name].run()


def run_all():
    assert_scenarios_enabled()
    for _, scenario in AVAILABLE_SCENARIOS.items():
        scenario.run()
