"""
Order history and post-commit lifecycle.

Orders are immutable snapshots; only status, payment_status and notes
change after commit, and only along ALLOWED_TRANSITIONS.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional, List, Tuple, Dict, Any

from cartflow.models import Order, OrderStatus, PaymentStatus, AuditAction
from cartflow.exceptions import NotFoundError, BusinessRuleViolation, ValidationError, ReasonCode
from cartflow.services import audit_service, inventory_service
from cartflow.services.payment_gateway import void_payment
from cartflow.utils.clock import utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.RETURN_REQUESTED},
    OrderStatus.RETURN_REQUESTED: {OrderStatus.RETURNED},
}
CANCELLABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.PROCESSING)


def generate_order_number(session, now: Optional[datetime] = None) -> str:
    """YYYYMMDD followed by 6 upper-case hex characters, unique."""
    prefix = (now or utcnow()).strftime('%Y%m%d')
    for _ in range(10):
        number = f"{prefix}{uuid.uuid4().hex[:6].upper()}"
        exists = session.query(Order.id).filter(Order.order_number == number).first()
        if not exists:
            return number
    raise RuntimeError('Could not generate a unique order number')


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(str(value).upper())
    except ValueError:
        raise ValidationError(f'Unknown order status: {value}')


def get_order(session, order_id: int, user_id: Optional[int] = None) -> Order:
    """Get an order; orders of other users are reported as not found."""
    query = session.query(Order).filter(Order.id == order_id)
    if user_id is not None:
        query = query.filter(Order.user_id == user_id)
    order = query.first()
    if not order:
        raise NotFoundError(f'Order {order_id} not found', ReasonCode.ORDER_NOT_FOUND,
                            payload={'order_id': order_id})
    return order


def list_orders(
    session,
    user_id: int,
    status: Optional[OrderStatus] = None,
    limit: int = 20,
    offset: int = 0
) -> Tuple[List[Order], int]:
    """User's orders, newest first, with the unpaginated count."""
    query = session.query(Order).filter(Order.user_id == user_id)
    if status is not None:
        query = query.filter(Order.status == status)

    total = query.count()
    orders = query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).offset(offset).all()
    return orders, total


def transition_order(session, order: Order, new_status: OrderStatus, actor_id: Optional[int] = None) -> Order:
    """
    Move an order along its lifecycle. Cancellation goes through cancel_order.

    Raises:
        BusinessRuleViolation: INVALID_STATUS_TRANSITION.
    """
    if new_status == OrderStatus.CANCELLED:
        raise BusinessRuleViolation('Use cancel_order to cancel an order', ReasonCode.INVALID_STATUS_TRANSITION)

    old_status = order.status
    if new_status not in ALLOWED_TRANSITIONS.get(old_status, set()):
        raise BusinessRuleViolation(
            f'Order {order.order_number} can not go from {old_status.value} to {new_status.value}',
            ReasonCode.INVALID_STATUS_TRANSITION,
            payload={'from': old_status.value, 'to': new_status.value}
        )

    order.status = new_status
    audit_service.log_action(
        session,
        AuditAction.ORDER_STATUS_CHANGED,
        resource_type='order',
        resource_id=order.id,
        details={'from': old_status.value, 'to': new_status.value},
        user_id=actor_id,
    )
    session.flush()
    logger.info(f"[ORDER] {order.order_number} {old_status.value} -> {new_status.value}")
    return order


def cancel_order(session, order_id: int, user_id: int, reason: Optional[str] = None, gateway=None) -> Order:
    """
    Cancel a PENDING or PROCESSING order.

    Stock is restored and the authorization voided. The coupon usage
    counter is left untouched. Commits the session.
    """
    order = get_order(session, order_id, user_id)
    old_status = order.status
    note = f"Cancelled: {reason}" if reason else "Cancelled by customer"
    notes = f"{order.notes}\n{note}" if order.notes else note

    # Conditional on the current status so two cancels can not both restore stock
    cancelled = session.query(Order).filter(
        Order.id == order.id,
        Order.status.in_(CANCELLABLE_STATUSES),
    ).update(
        {
            Order.status: OrderStatus.CANCELLED,
            Order.payment_status: PaymentStatus.VOIDED.value,
            Order.notes: notes,
            Order.updated_at: utcnow(),
        },
        synchronize_session=False,
    )
    if cancelled != 1:
        session.rollback()
        raise BusinessRuleViolation(
            f'Order {order.order_number} can not be cancelled in status {old_status.value}',
            ReasonCode.INVALID_STATUS_TRANSITION,
            payload={'from': old_status.value, 'to': OrderStatus.CANCELLED.value}
        )

    # Same lock order as reserve_all
    items = sorted((item.variant_id, item.quantity) for item in order.items)
    inventory_service.release_all(session, items)

    audit_service.log_action(
        session,
        AuditAction.ORDER_CANCELLED,
        resource_type='order',
        resource_id=order.id,
        details={'from': old_status.value, 'reason': reason, 'restocked': items},
        user_id=user_id,
    )
    payment_reference = order.payment_reference
    order_number = order.order_number
    session.commit()
    logger.info(f"[ORDER] {order_number} cancelled, restocked {len(items)} line(s)")

    if payment_reference and gateway is not None:
        void_payment(gateway, payment_reference)

    session.refresh(order)
    return order


def order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        'id': order.id,
        'order_number': order.order_number,
        'status': order.status.value,
        'payment_status': order.payment_status,
        'payment_reference': order.payment_reference,
        'shipping_address': order.shipping_address,
        'billing_address': order.billing_address,
        'items': [
            {
                'variant_id': item.variant_id,
                'sku': item.sku,
                'product_name': item.product_name,
                'quantity': item.quantity,
                'unit_price': str(item.unit_price),
                'line_subtotal': str(item.line_subtotal),
            }
            for item in order.items
        ],
        'subtotal': str(order.subtotal_amount),
        'discount': str(order.discount_amount),
        'shipping_cost': str(order.shipping_cost),
        'tax': str(order.tax_amount),
        'grand_total': str(order.grand_total_amount),
        'coupon_code': order.applied_coupon_code,
        'notes': order.notes,
        'created_at': order.created_at.isoformat() if order.created_at else None,
    }
