"""
Pricing calculator.

Pure functions over ProductVariant discount data. Rounding is half-up to
the cent and happens once, at the end of each computation.
"""
from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime
from typing import Optional

from cartflow.models.coupon import DiscountType
from cartflow.utils.clock import utcnow, to_naive_utc

CENT = Decimal('0.01')
ZERO = Decimal('0.00')
HUNDRED = Decimal('100')


def round_money(value) -> Decimal:
    """Round to the currency minor unit using round-half-up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def is_discount_active(variant, now: Optional[datetime] = None) -> bool:
    """True when the variant's sale is switched on and not past its end date."""
    if not variant.is_on_sale or not variant.discount_type:
        return False
    if variant.discount_valid_until is None:
        return True
    now = to_naive_utc(now) if now else utcnow()
    return now <= variant.discount_valid_until


def effective_price(variant, now: Optional[datetime] = None) -> Decimal:
    """
    Current effective unit price of a variant.

    Returns max(0, price - discount) while a discount is active, otherwise
    the base price. Never negative.
    """
    base = Decimal(str(variant.price))
    if not is_discount_active(variant, now):
        return round_money(base)

    value = Decimal(str(variant.discount_value or 0))
    if variant.discount_type == DiscountType.PERCENTAGE.value:
        discount = base * value / HUNDRED
    else:
        discount = value

    return round_money(max(ZERO, base - discount))


def line_total(unit_price: Decimal, quantity: int) -> Decimal:
    """Line subtotal from an already rounded unit price."""
    return round_money(Decimal(unit_price) * quantity)


def shipping_cost(item_count: int, flat_fee, free_min_items: int) -> Decimal:
    """Flat fee per order, waived once the order holds free_min_items units."""
    if free_min_items and item_count >= free_min_items:
        return ZERO
    return round_money(flat_fee)


def tax_amount(subtotal: Decimal, rate) -> Decimal:
    """Flat tax rate applied to the subtotal."""
    return round_money(Decimal(subtotal) * Decimal(str(rate)))


def grand_total(subtotal, discount, shipping, tax) -> Decimal:
    """Sum of components that are each rounded before adding up."""
    return (
        round_money(subtotal) - round_money(discount)
        + round_money(shipping) + round_money(tax)
    )
