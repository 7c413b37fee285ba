"""
Cart service - one persistent cart per user.

Mutations flush but never commit; the blueprint owns the transaction.
Every mutation touches the cart row, which bumps Cart.version, and
refreshes the cached total. Totals are always re-priced from the catalog.
"""
import logging
from decimal import Decimal
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from cartflow.models import Cart, CartItem
from cartflow.exceptions import (
    BusinessRuleViolation, NotFoundError, ResourceConflict, ReasonCode
)
from cartflow.services import catalog_service, coupon_service
from cartflow.services.pricing_service import effective_price, line_total, round_money, ZERO
from cartflow.utils.clock import utcnow
from cartflow.utils.number_format import parse_quantity

logger = logging.getLogger(__name__)


def get_cart(session: Session, user_id: int) -> Optional[Cart]:
    """Get the user's cart without creating one."""
    return session.query(Cart).filter(Cart.user_id == user_id).first()


def get_or_create_cart(session: Session, user_id: int) -> Cart:
    """
    Get existing cart or create a new one for the user.
    One cart per user.
    """
    cart = get_cart(session, user_id)
    if not cart:
        cart = Cart(user_id=user_id, total_amount=ZERO)
        session.add(cart)
        session.flush()
        logger.info(f"[CART] Created cart {cart.id} for user {user_id}")
    return cart


def _find_line(cart: Cart, variant_id: int) -> Optional[CartItem]:
    for item in cart.items:
        if item.variant_id == variant_id:
            return item
    return None


def _touch(session: Session, cart: Cart, now: Optional[datetime] = None) -> None:
    """Drop the coupon of an empty cart, refresh the cached total and bump the version."""
    if not cart.items:
        cart.applied_coupon_code = None

    cart.total_amount = compute_total(session, cart, now)['total']
    cart.updated_at = utcnow()

    try:
        session.flush()
    except StaleDataError:
        raise ResourceConflict('Cart was modified by another request', ReasonCode.CART_MODIFIED)


def add_item(session: Session, user_id: int, variant_id: int, quantity, now: Optional[datetime] = None) -> CartItem:
    """
    Add a variant to the cart, or increase its quantity if already present.

    Raises:
        ValidationError: INVALID_QUANTITY when quantity <= 0.
        NotFoundError: unknown variant.
        BusinessRuleViolation: VARIANT_INACTIVE.
    """
    quantity = parse_quantity(quantity)
    variant = catalog_service.get_variant(session, variant_id)
    if not variant.is_active:
        raise BusinessRuleViolation(
            f'Variant {variant.sku} is not available for purchase',
            ReasonCode.VARIANT_INACTIVE,
            payload={'variant_id': variant.id}
        )

    cart = get_or_create_cart(session, user_id)
    price = effective_price(variant, now)

    line = _find_line(cart, variant.id)
    if line:
        line.quantity += quantity
        line.price_at_add = price
    else:
        line = CartItem(variant=variant, quantity=quantity, price_at_add=price)
        cart.items.append(line)

    _touch(session, cart, now)
    logger.info(f"[CART] user={user_id} variant={variant.id} qty={line.quantity} cart_version={cart.version}")
    return line


def update_item(session: Session, user_id: int, variant_id: int, quantity, now: Optional[datetime] = None) -> Optional[CartItem]:
    """
    Set a line's quantity. Zero removes the line.

    Returns the updated line, or None when it was removed.
    """
    quantity = parse_quantity(quantity, allow_zero=True)
    cart = get_cart(session, user_id)
    line = _find_line(cart, variant_id) if cart else None
    if not line:
        raise NotFoundError('Variant is not in the cart', payload={'variant_id': variant_id})

    if quantity == 0:
        cart.items.remove(line)
        line = None
    else:
        line.quantity = quantity

    _touch(session, cart, now)
    return line


def remove_item(session: Session, user_id: int, variant_id: int, now: Optional[datetime] = None) -> None:
    """Remove a line from the cart."""
    update_item(session, user_id, variant_id, 0, now)


def clear_cart(session: Session, cart: Cart) -> None:
    """Remove every line and the applied coupon."""
    cart.items.clear()
    cart.applied_coupon_code = None
    _touch(session, cart)
    logger.info(f"[CART] Cleared cart {cart.id}")


def apply_coupon(session: Session, user_id: int, code: str, now: Optional[datetime] = None):
    """
    Validate a coupon against the live subtotal and attach it to the cart.

    Raises:
        BusinessRuleViolation: EMPTY_CART or the coupon rejection reason.
    """
    code = coupon_service.normalize_code(code)
    cart = get_cart(session, user_id)
    if not cart or not cart.items:
        raise BusinessRuleViolation('Cannot apply a coupon to an empty cart', ReasonCode.EMPTY_CART)

    validation = coupon_service.validate_coupon(session, code, compute_subtotal(cart, now), now)
    validation.raise_if_rejected()

    cart.applied_coupon_code = validation.code
    _touch(session, cart, now)
    logger.info(f"[CART] Coupon {validation.code} applied to cart {cart.id}, discount {validation.discount}")
    return validation


def remove_coupon(session: Session, user_id: int) -> Optional[Cart]:
    cart = get_cart(session, user_id)
    if cart and cart.applied_coupon_code:
        cart.applied_coupon_code = None
        _touch(session, cart)
    return cart


def compute_subtotal(cart: Cart, now: Optional[datetime] = None) -> Decimal:
    """Sum of effective_price(variant) * qty over the current lines."""
    subtotal = ZERO
    for item in cart.items:
        subtotal += line_total(effective_price(item.variant, now), item.quantity)
    return round_money(subtotal)


def compute_total(session: Session, cart: Cart, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Re-price the cart from the catalog and re-validate its coupon.

    A coupon that no longer validates contributes no discount and is
    reported in warnings instead of being trusted.
    """
    lines = []
    subtotal = ZERO
    item_count = 0

    for item in cart.items:
        unit_price = effective_price(item.variant, now)
        line_subtotal = line_total(unit_price, item.quantity)
        lines.append({
            'variant_id': item.variant_id,
            'sku': item.variant.sku,
            'product_name': item.variant.product_name,
            'quantity': item.quantity,
            'unit_price': unit_price,
            'price_at_add': item.price_at_add,
            'line_subtotal': line_subtotal,
            'is_active': item.variant.is_active,
        })
        subtotal += line_subtotal
        item_count += item.quantity

    subtotal = round_money(subtotal)
    discount = ZERO
    coupon = None
    warnings = []

    if cart.applied_coupon_code and lines:
        coupon = coupon_service.validate_coupon(session, cart.applied_coupon_code, subtotal, now)
        if coupon.is_valid:
            discount = coupon.discount
        else:
            warnings.append({
                'reason': ReasonCode.COUPON_NO_LONGER_VALID.value,
                'code': coupon.code,
                'detail': coupon.reason.value,
            })

    return {
        'lines': lines,
        'item_count': item_count,
        'subtotal': subtotal,
        'discount': discount,
        'total': max(ZERO, subtotal - discount),
        'coupon': coupon,
        'warnings': warnings,
    }


def cart_to_dict(session: Session, cart: Optional[Cart], now: Optional[datetime] = None) -> Dict[str, Any]:
    """JSON representation of the cart read model."""
    if cart is None:
        return {
            'id': None, 'version': 0, 'items': [], 'item_count': 0,
            'subtotal': '0.00', 'discount': '0.00', 'total': '0.00',
            'coupon': None, 'warnings': [],
        }

    totals = compute_total(session, cart, now)
    return {
        'id': cart.id,
        'version': cart.version,
        'items': [
            {
                'variant_id': line['variant_id'],
                'sku': line['sku'],
                'product_name': line['product_name'],
                'quantity': line['quantity'],
                'unit_price': str(line['unit_price']),
                'price_at_add': str(line['price_at_add']),
                'line_subtotal': str(line['line_subtotal']),
                'is_active': line['is_active'],
            }
            for line in totals['lines']
        ],
        'item_count': totals['item_count'],
        'subtotal': str(totals['subtotal']),
        'discount': str(totals['discount']),
        'total': str(totals['total']),
        'coupon': totals['coupon'].to_dict() if totals['coupon'] else None,
        'warnings': totals['warnings'],
    }
