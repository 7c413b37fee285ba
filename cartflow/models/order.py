"""Order model."""
from sqlalchemy import Column, BigInteger, String, Numeric, DateTime, Enum, Text, JSON, event, inspect
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from cartflow.database import Base, BigIntegerPK
import enum


class OrderStatus(enum.Enum):
    """Order status enum (post-commit lifecycle)."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURN_REQUESTED = "RETURN_REQUESTED"
    RETURNED = "RETURNED"


class PaymentStatus(str, enum.Enum):
    """State of the payment authorization behind an order."""
    AUTHORIZED = 'AUTHORIZED'
    VOIDED = 'VOIDED'


# Columns that form the frozen price/address snapshot.
FROZEN_ORDER_FIELDS = (
    'user_id', 'order_number', 'idempotency_key',
    'shipping_address', 'billing_address',
    'payment_method_ref', 'payment_reference',
    'subtotal_amount', 'discount_amount', 'shipping_cost', 'tax_amount', 'grand_total_amount',
    'applied_coupon_code', 'created_at',
)


class Order(Base):
    """Committed order. Only status, payment_status and notes may change."""

    __tablename__ = 'customer_order'

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    order_number = Column(String(20), nullable=False, unique=True, index=True)

    # Idempotency key to prevent duplicate orders on double-submit
    idempotency_key = Column(String(128), unique=True, nullable=False, index=True)

    # Address snapshots
    shipping_address = Column(JSON, nullable=False)
    billing_address = Column(JSON, nullable=False)

    # Payment
    payment_method_ref = Column(String(100), nullable=False)
    payment_reference = Column(String(100), nullable=True)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.AUTHORIZED.value)

    # Frozen amounts
    subtotal_amount = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(10, 2), nullable=False, default=0)
    grand_total_amount = Column(Numeric(10, 2), nullable=False)
    applied_coupon_code = Column(String(50), nullable=True)

    status = Column(Enum(OrderStatus, name='order_status'), nullable=False, default=OrderStatus.PENDING)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    # Relationships
    items = relationship('OrderItem', back_populates='order', cascade='all, delete-orphan', order_by='OrderItem.id')

    def __repr__(self):
        return f"<Order(id={self.id}, number='{self.order_number}', status={self.status.value})>"


@event.listens_for(Order, 'before_update')
def _protect_order_snapshot(mapper, connection, target):
    state = inspect(target)
    changed = [name for name in FROZEN_ORDER_FIELDS if state.attrs[name].history.has_changes()]
    if changed:
        raise ValueError(f"Order {target.id} is immutable; attempted to change {', '.join(changed)}")
