"""Inventory Item model."""
from sqlalchemy import Column, BigInteger, Integer, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from cartflow.database import Base


class InventoryItem(Base):
    """Purchasable stock - 1:1 with ProductVariant."""

    __tablename__ = 'inventory_item'
    __table_args__ = (
        CheckConstraint('available_qty >= 0', name='ck_inventory_item_available_non_negative'),
    )

    variant_id = Column(BigInteger, ForeignKey('product_variant.id'), primary_key=True)
    available_qty = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationship
    variant = relationship('ProductVariant', back_populates='stock')

    def __repr__(self):
        return f"<InventoryItem(variant_id={self.variant_id}, available_qty={self.available_qty})>"
