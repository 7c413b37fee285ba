"""Checkout attempt model (idempotency record and compensation log)."""
from sqlalchemy import Column, BigInteger, Integer, String, Numeric, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
from cartflow.utils.clock import utcnow
from cartflow.database import Base, BigIntegerPK
import enum


class CheckoutState(enum.Enum):
    """Checkout state machine."""
    DRAFT = "DRAFT"
    VALIDATING = "VALIDATING"
    RESERVING_STOCK = "RESERVING_STOCK"
    AUTHORIZING_PAYMENT = "AUTHORIZING_PAYMENT"
    COMMITTED = "COMMITTED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"

    @property
    def is_terminal(self):
        return self in (CheckoutState.COMMITTED, CheckoutState.REJECTED, CheckoutState.FAILED)

    @property
    def is_reclaimable(self):
        return self in (CheckoutState.REJECTED, CheckoutState.FAILED)


class CheckoutAttempt(Base):
    """
    One row per idempotency key.

    A COMMITTED attempt points at its order and is what replays return.
    REJECTED and FAILED attempts may be reclaimed by a retry with the same key.
    Any other state means a checkout is in flight for that key.
    """

    __tablename__ = 'checkout_attempt'

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(128), nullable=False, unique=True, index=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    cart_id = Column(BigInteger, nullable=True)
    cart_version = Column(Integer, nullable=True)

    state = Column(Enum(CheckoutState, name='checkout_state'), nullable=False, default=CheckoutState.DRAFT)
    reason = Column(String(50), nullable=True)
    grand_total_amount = Column(Numeric(10, 2), nullable=True)

    # Payment authorization held while the order is being committed
    payment_reference = Column(String(100), nullable=True)

    order_id = Column(BigInteger, ForeignKey('customer_order.id'), nullable=True)
    # Cart version left behind by the commit that cleared the cart
    cleared_cart_version = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    order = relationship('Order')
    reservations = relationship(
        'StockReservation',
        back_populates='attempt',
        cascade='all, delete-orphan',
        order_by='StockReservation.variant_id',
    )

    def __repr__(self):
        return f"<CheckoutAttempt(key='{self.idempotency_key}', state={self.state.value})>"
