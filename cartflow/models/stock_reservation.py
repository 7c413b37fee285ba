"""Stock reservation model."""
from sqlalchemy import Column, BigInteger, Integer, DateTime, ForeignKey, Enum, CheckConstraint
from sqlalchemy.orm import relationship
from cartflow.utils.clock import utcnow
from cartflow.database import Base, BigIntegerPK
import enum


class ReservationStatus(enum.Enum):
    """Lifecycle of a quantity taken out of available stock."""
    HELD = "HELD"            # Decremented, order not yet committed
    CONSUMED = "CONSUMED"    # Became part of a committed order
    RELEASED = "RELEASED"    # Returned to available stock


class StockReservation(Base):
    """
    Quantity decremented from InventoryItem on behalf of a checkout attempt.

    HELD rows older than the reservation timeout belong to a crashed checkout
    and are released by recovery_service.
    """

    __tablename__ = 'stock_reservation'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_stock_reservation_qty_positive'),
    )

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    attempt_id = Column(BigInteger, ForeignKey('checkout_attempt.id', ondelete='CASCADE'), nullable=False, index=True)
    variant_id = Column(BigInteger, ForeignKey('product_variant.id'), nullable=False)
    quantity = Column(Integer, nullable=False)
    status = Column(Enum(ReservationStatus, name='reservation_status'), nullable=False,
                    default=ReservationStatus.HELD, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    attempt = relationship('CheckoutAttempt', back_populates='reservations')

    def __repr__(self):
        return f"<StockReservation(variant_id={self.variant_id}, qty={self.quantity}, status={self.status.value})>"
