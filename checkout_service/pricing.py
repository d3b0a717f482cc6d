"""
pricing.py — Order Pricing

Pure computation of subtotal, tax, shipping and total for a cart. Amounts are
integers in minor currency units; tax is rounded half-up to a whole unit.
Input validation (positive quantities, non-negative prices) happens before
this module is called.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Tuple

from .models import Pricing


def compute_tax(subtotal: int, tax_rate: Decimal) -> int:
    return int((Decimal(subtotal) * Decimal(tax_rate)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_pricing(
        lines: Iterable[Tuple[int, int]],
        tax_rate: Decimal,
        include_shipping: bool,
        shipping_cost: int,
) -> Pricing:
    """
    Computes the pricing of an order.

    Args:
        lines (Iterable[Tuple[int, int]]): (unit_price, quantity) pairs.
        tax_rate (Decimal): VAT rate, e.g. Decimal("0.19").
        include_shipping (bool): Whether the flat shipping cost applies.
        shipping_cost (int): Flat shipping cost in minor currency units.

    Returns:
        Pricing: subtotal, tax, shipping and total, with total = subtotal + tax + shipping.
    """
    subtotal = sum(unit_price * quantity for unit_price, quantity in lines)
    tax = compute_tax(subtotal, tax_rate)
    shipping = shipping_cost if include_shipping else 0
    return Pricing(subtotal=subtotal, tax=tax, shipping=shipping, total=subtotal + tax + shipping)
