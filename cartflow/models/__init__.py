"""Models package - exports all SQLAlchemy models."""
# Catalog
from cartflow.models.product_variant import ProductVariant
from cartflow.models.inventory_item import InventoryItem
from cartflow.models.address import Address

# Cart & Coupons
from cartflow.models.coupon import Coupon, DiscountType
from cartflow.models.cart import Cart
from cartflow.models.cart_item import CartItem

# Checkout & Orders
from cartflow.models.order import Order, OrderStatus, PaymentStatus, FROZEN_ORDER_FIELDS
from cartflow.models.order_item import OrderItem
from cartflow.models.checkout_attempt import CheckoutAttempt, CheckoutState
from cartflow.models.stock_reservation import StockReservation, ReservationStatus
from cartflow.models.audit_log import AuditLog, AuditAction

__all__ = [
    # Catalog
    'ProductVariant', 'InventoryItem', 'Address',
    # Cart & Coupons
    'Coupon', 'DiscountType', 'Cart', 'CartItem',
    # Checkout & Orders
    'Order', 'OrderStatus', 'PaymentStatus', 'FROZEN_ORDER_FIELDS', 'OrderItem',
    'CheckoutAttempt', 'CheckoutState', 'StockReservation', 'ReservationStatus',
    'AuditLog', 'AuditAction',
]
