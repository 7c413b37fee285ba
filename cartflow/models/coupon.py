"""Coupon model."""
from sqlalchemy import Column, BigInteger, Integer, String, Boolean, Numeric, DateTime, CheckConstraint
from sqlalchemy.sql import func
from cartflow.database import Base, BigIntegerPK
import enum


class DiscountType(str, enum.Enum):
    """How a discount value is interpreted. Shared by coupons and variant sales."""
    PERCENTAGE = 'PERCENTAGE'
    AMOUNT = 'AMOUNT'


class Coupon(Base):
    """
    Reusable discount code.

    usage_count only ever grows, and only through the conditional increment
    in coupon_service.redeem_coupon. usage_limit NULL means unlimited.
    """

    __tablename__ = 'coupon'
    __table_args__ = (
        CheckConstraint('usage_count >= 0', name='ck_coupon_usage_non_negative'),
        CheckConstraint(
            'usage_limit IS NULL OR usage_count <= usage_limit',
            name='ck_coupon_usage_within_limit'
        ),
        CheckConstraint('valid_until > valid_from', name='ck_coupon_window'),
    )

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    code = Column(String(50), nullable=False, unique=True, index=True)
    discount_type = Column(String(10), nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=False)
    minimum_order_value = Column(Numeric(10, 2), nullable=True)
    maximum_discount_amount = Column(Numeric(10, 2), nullable=True)
    valid_from = Column(DateTime, nullable=False)
    valid_until = Column(DateTime, nullable=False)
    usage_count = Column(Integer, nullable=False, default=0, server_default='0')
    usage_limit = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default='true')
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    def __repr__(self):
        return f"<Coupon(code='{self.code}', usage={self.usage_count}/{self.usage_limit})>"
