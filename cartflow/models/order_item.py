"""Order Item model."""
from sqlalchemy import Column, BigInteger, Integer, String, Numeric, ForeignKey, event, inspect
from sqlalchemy.orm import relationship
from cartflow.database import Base, BigIntegerPK


class OrderItem(Base):
    """Order line with the unit price frozen at order time."""

    __tablename__ = 'order_item'

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    order_id = Column(BigInteger, ForeignKey('customer_order.id'), nullable=False, index=True)
    variant_id = Column(BigInteger, ForeignKey('product_variant.id'), nullable=False)

    # Snapshotted catalog data
    sku = Column(String(64), nullable=False)
    product_name = Column(String(200), nullable=False)

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    line_subtotal = Column(Numeric(10, 2), nullable=False)

    # Relationships
    order = relationship('Order', back_populates='items')

    def __repr__(self):
        return f"<OrderItem(id={self.id}, variant_id={self.variant_id}, quantity={self.quantity})>"


@event.listens_for(OrderItem, 'before_update')
def _reject_order_item_update(mapper, connection, target):
    state = inspect(target)
    if any(attr.history.has_changes() for attr in state.attrs if attr.key in mapper.columns):
        raise ValueError(f"OrderItem {target.id} is immutable")
