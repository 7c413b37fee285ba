"""Cart model (one active cart per user)."""
from sqlalchemy import Column, BigInteger, Integer, String, Numeric, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from cartflow.database import Base, BigIntegerPK


class Cart(Base):
    """
    Shopping cart.

    total_amount is a denormalized cache refreshed on every mutation. It is
    never read back by checkout, which re-prices from the catalog.
    version increases on every mutation and lets checkout detect edits made
    while a payment was being authorized.
    """

    __tablename__ = 'cart'

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False, unique=True, index=True)
    applied_coupon_code = Column(String(50), nullable=True)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    # Every UPDATE of the row bumps version and fails on a stale read
    __mapper_args__ = {'version_id_col': version}

    # Relationships
    items = relationship(
        'CartItem',
        back_populates='cart',
        cascade='all, delete-orphan',
        order_by='CartItem.id',
    )

    def __repr__(self):
        return f"<Cart(id={self.id}, user_id={self.user_id}, version={self.version})>"
