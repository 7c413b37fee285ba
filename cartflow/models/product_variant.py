"""Product Variant model (catalog-owned, read-mostly)."""
from sqlalchemy import Column, BigInteger, String, Boolean, Numeric, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from cartflow.database import Base, BigIntegerPK


class ProductVariant(Base):
    """
    Purchasable SKU.

    The discount descriptor is flattened into the discount_* columns:
    discount_type is 'PERCENTAGE' or 'AMOUNT' (NULL when there is none),
    discount_valid_until NULL means the sale has no end date.
    """

    __tablename__ = 'product_variant'

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    sku = Column(String(64), nullable=False, unique=True)
    product_name = Column(String(200), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    # Discount descriptor
    discount_type = Column(String(10), nullable=True)
    discount_value = Column(Numeric(10, 2), nullable=False, default=0, server_default='0')
    discount_valid_until = Column(DateTime, nullable=True)
    is_on_sale = Column(Boolean, nullable=False, default=False, server_default='false')

    is_active = Column(Boolean, nullable=False, default=True, server_default='true')
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    stock = relationship('InventoryItem', uselist=False, back_populates='variant', cascade='all, delete-orphan')

    def __repr__(self):
        return f"<ProductVariant(id={self.id}, sku='{self.sku}', price={self.price})>"

    @property
    def stock_quantity(self):
        """Get available quantity from the inventory ledger."""
        if self.stock:
            return self.stock.available_qty
        return 0
