"""
Coupon validation and redemption.

Validation is read-only and is re-run at checkout; the only write is the
conditional usage increment performed inside the commit transaction.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from datetime import datetime
from typing import Optional

from sqlalchemy import or_

from cartflow.models import Coupon, DiscountType
from cartflow.exceptions import BusinessRuleViolation, ValidationError, ReasonCode
from cartflow.services.pricing_service import round_money, ZERO, HUNDRED
from cartflow.utils.clock import utcnow, to_naive_utc

logger = logging.getLogger(__name__)


REJECTION_MESSAGES = {
    ReasonCode.COUPON_NOT_FOUND: 'Coupon not found',
    ReasonCode.COUPON_INACTIVE: 'Coupon is not active',
    ReasonCode.COUPON_NOT_YET_VALID: 'Coupon is not valid yet',
    ReasonCode.COUPON_EXPIRED: 'Coupon has expired',
    ReasonCode.COUPON_USAGE_LIMIT_REACHED: 'Coupon usage limit reached',
    ReasonCode.COUPON_BELOW_MINIMUM_ORDER: 'Order subtotal is below the coupon minimum',
}


@dataclass
class CouponValidation:
    """Outcome of validating a code against a subtotal."""
    code: str
    discount: Decimal = ZERO
    reason: Optional[ReasonCode] = None
    coupon: Optional[Coupon] = None

    @property
    def is_valid(self) -> bool:
        return self.reason is None

    @property
    def message(self) -> str:
        if self.reason is None:
            return 'Coupon applied'
        return REJECTION_MESSAGES.get(self.reason, 'Coupon rejected')

    def raise_if_rejected(self):
        if self.reason is not None:
            raise BusinessRuleViolation(self.message, self.reason, payload={'code': self.code})

    def to_dict(self) -> dict:
        data = {
            'code': self.code,
            'valid': self.is_valid,
            'discount': str(self.discount),
            'message': self.message,
        }
        if self.reason is not None:
            data['reason'] = self.reason.value
        return data


def normalize_code(code) -> str:
    """Coupon codes are case-insensitive and stored upper-case."""
    if not isinstance(code, str) or not code.strip():
        raise ValidationError('code is required')
    return code.strip().upper()


def get_coupon(session, code: str) -> Optional[Coupon]:
    return session.query(Coupon).filter(Coupon.code == normalize_code(code)).first()


def compute_discount(coupon: Coupon, subtotal: Decimal) -> Decimal:
    """
    Discount granted on a subtotal: min(raw, cap, subtotal).

    A coupon never discounts more than the subtotal nor more than its cap.
    """
    subtotal = Decimal(subtotal)
    value = Decimal(str(coupon.discount_value))

    if coupon.discount_type == DiscountType.PERCENTAGE.value:
        raw = subtotal * value / HUNDRED
    else:
        raw = value

    candidates = [raw, subtotal]
    if coupon.maximum_discount_amount is not None:
        candidates.append(Decimal(str(coupon.maximum_discount_amount)))

    return round_money(max(ZERO, min(candidates)))


def validate_coupon(session, code: str, subtotal: Decimal, now: Optional[datetime] = None) -> CouponValidation:
    """
    Validate a coupon code for a cart subtotal.

    Checks run in a fixed order and stop at the first failure:
    not found, inactive, not yet valid, expired, usage limit, minimum order.
    """
    code = normalize_code(code)
    now = to_naive_utc(now) if now else utcnow()
    subtotal = round_money(subtotal)

    coupon = session.query(Coupon).filter(Coupon.code == code).first()

    if coupon is None:
        reason = ReasonCode.COUPON_NOT_FOUND
    elif not coupon.is_active:
        reason = ReasonCode.COUPON_INACTIVE
    elif now < coupon.valid_from:
        reason = ReasonCode.COUPON_NOT_YET_VALID
    elif now > coupon.valid_until:
        reason = ReasonCode.COUPON_EXPIRED
    elif coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        reason = ReasonCode.COUPON_USAGE_LIMIT_REACHED
    elif coupon.minimum_order_value is not None and subtotal < Decimal(str(coupon.minimum_order_value)):
        reason = ReasonCode.COUPON_BELOW_MINIMUM_ORDER
    else:
        reason = None

    if reason is not None:
        logger.info(f"[COUPON] {code} rejected for subtotal {subtotal}: {reason.value}")
        return CouponValidation(code=code, reason=reason, coupon=coupon)

    discount = compute_discount(coupon, subtotal)
    logger.debug(f"[COUPON] {code} valid for subtotal {subtotal}: discount {discount}")
    return CouponValidation(code=code, discount=discount, coupon=coupon)


def redeem_coupon(session, code: str) -> bool:
    """
    Increment usage_count if the coupon still has capacity.

    Single conditional UPDATE, so two checkouts racing for the last use can
    not both succeed. Returns False when the limit was reached meanwhile.
    """
    updated = session.query(Coupon).filter(
        Coupon.code == normalize_code(code),
        or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
    ).update(
        {Coupon.usage_count: Coupon.usage_count + 1},
        synchronize_session=False,
    )

    if updated != 1:
        logger.warning(f"[COUPON] {code} lost the race for its last use")
        return False
    return True
