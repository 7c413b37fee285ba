"""Cart Item model."""
from sqlalchemy import Column, BigInteger, Integer, Numeric, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from cartflow.database import Base, BigIntegerPK


class CartItem(Base):
    """
    Cart Item - one line per variant.

    price_at_add is informational only; totals are always re-priced.
    """

    __tablename__ = 'cart_item'
    __table_args__ = (
        UniqueConstraint('cart_id', 'variant_id', name='uq_cart_item_variant'),
        CheckConstraint('quantity > 0', name='ck_cart_item_quantity_positive'),
    )

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    cart_id = Column(BigInteger, ForeignKey('cart.id', ondelete='CASCADE'), nullable=False, index=True)
    variant_id = Column(BigInteger, ForeignKey('product_variant.id'), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    price_at_add = Column(Numeric(10, 2), nullable=False)
    added_at = Column(DateTime, nullable=False, server_default=func.now())

    # Relationships
    cart = relationship('Cart', back_populates='items')
    variant = relationship('ProductVariant')

    def __repr__(self):
        return f"<CartItem(id={self.id}, variant_id={self.variant_id}, quantity={self.quantity})>"
