"""
Monetary helpers shared by the offer and order engines.

Amounts are stored as floats with two decimals. Rounding is half-up and is
applied only to values that get persisted; ratios are kept unrounded.
"""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")

PERCENTAGE = "percentage"
AMOUNT = "amount"


def round_money(value: float) -> float:
    """Round to the nearest currency sub-unit, halves away from zero."""
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def discount_amount(price: float, discount_type: str, discount_value: float) -> float:
    """Absolute discount an offer or coupon grants on `price` (unrounded)."""
    if discount_type == PERCENTAGE:
        return price * discount_value / 100
    return discount_value


def discounted_price(price: float, discount: float) -> float:
    return round_money(max(price - discount, 0))


def proportional_share(item_total: float, order_total: float, order_discount: float) -> float:
    """Part of an order-wide discount attributable to one line (unrounded)."""
    if order_total <= 0 or not order_discount:
        return 0.0
    return (item_total / order_total) * order_discount


def proportional_refund(item_total: float, order_total: float, order_discount: float) -> float:
    share = proportional_share(item_total, order_total, order_discount)
    return round_money(max(item_total - share, 0))


def final_price(total_amount: float, total_discount: float, coupon_discount: float) -> float:
    return max(0.0, round_money(total_amount - total_discount - coupon_discount))


def to_minor_units(amount: float) -> int:
    """Gateway amounts are integers in the smallest currency unit (paise)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
