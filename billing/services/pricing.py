"""
Consultation pricing. Pure functions on Decimal; rounding is half-up to 2 places, applied once at the end.
"""
from decimal import Decimal, ROUND_HALF_UP

from billing import config

CENT = Decimal("0.01")
SECONDS_PER_MINUTE = Decimal("60")


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None:
        return Decimal("0")
    # str() first so floats like 0.1 keep their printed value
    return Decimal(str(value))


def round_money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_cost(seconds: int, rate_per_minute) -> Decimal:
    """Fractional minutes are billed proportionally: 90s at 10/min = 15.00."""
    if seconds <= 0:
        return round_money(0)
    return round_money(Decimal(seconds) / SECONDS_PER_MINUTE * to_decimal(rate_per_minute))


def calculate_platform_fee(cost, fee_percent) -> Decimal:
    return round_money(to_decimal(cost) * to_decimal(fee_percent) / Decimal("100"))


def calculate_expert_earnings(cost, platform_fee) -> Decimal:
    return round_money(to_decimal(cost) - to_decimal(platform_fee))


def resolve_platform_fee_percent(fee_config, order_type: str = "", category: str = "", default=None) -> Decimal:
    """
    Fee percent for an order from an expert's platform_fee_config.

    Priority: fee_by_category > fee_by_type > default_fee_percent > platform default.
    """
    fallback = to_decimal(default) if default is not None else config.DEFAULT_PLATFORM_FEE_PERCENT
    fee_config = fee_config or {}

    if category:
        by_category = fee_config.get("fee_by_category") or {}
        if by_category.get(category) is not None:
            return to_decimal(by_category[category])
    if order_type:
        by_type = fee_config.get("fee_by_type") or {}
        if by_type.get(order_type) is not None:
            return to_decimal(by_type[order_type])
    if fee_config.get("default_fee_percent") is not None:
        return to_decimal(fee_config["default_fee_percent"])
    return fallback
