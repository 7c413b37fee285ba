"""Orders blueprint - checkout trigger and order history."""
from flask import Blueprint, jsonify, g, request, current_app

from cartflow.database import get_session
from cartflow.exceptions import CheckoutError, ValidationError
from cartflow.middleware import require_login
from cartflow.services import checkout_service, order_service
from cartflow.services.payment_gateway import get_payment_gateway
from cartflow.blueprints._helpers import json_payload, parse_id, parse_bool

orders_bp = Blueprint('orders', __name__, url_prefix='/orders')

MAX_PAGE_SIZE = 100


@orders_bp.route('', methods=['POST'])
@require_login
def place_order():
    """
    Checkout the caller's cart.

    Body: {"shipping_address_id", "billing_address_id"?, "payment_method_ref",
    "cart_version"?, "strict_coupon"?}. Header Idempotency-Key deduplicates
    retries; without it, cart_version from GET /cart does.

    Returns 201 with the new order, or 200 with the original order when the
    key was already used for a committed checkout.
    """
    db_session = get_session()
    payload = json_payload()

    if payload.get('shipping_address_id') is None:
        raise ValidationError('shipping_address_id is required')
    shipping_address_id = parse_id(payload['shipping_address_id'], 'shipping_address_id')
    billing_address_id = None
    if payload.get('billing_address_id') is not None:
        billing_address_id = parse_id(payload['billing_address_id'], 'billing_address_id')
    cart_version = None
    if payload.get('cart_version') is not None:
        cart_version = parse_id(payload['cart_version'], 'cart_version')

    try:
        result = checkout_service.place_order(
            db_session,
            user_id=g.user_id,
            shipping_address_id=shipping_address_id,
            billing_address_id=billing_address_id,
            payment_method_ref=payload.get('payment_method_ref'),
            idempotency_key=request.headers.get('Idempotency-Key'),
            cart_version=cart_version,
            strict_coupon=parse_bool(payload.get('strict_coupon'), 'strict_coupon'),
        )
    except CheckoutError as e:
        current_app.logger.warning(f"[CHECKOUT] user {g.user_id} checkout failed [{e.status_code}]: {e.message}")
        raise

    data = order_service.order_to_dict(result.order)
    data['replayed'] = result.replayed
    data['warnings'] = result.warnings
    return jsonify(data), 200 if result.replayed else 201


@orders_bp.route('', methods=['GET'])
@require_login
def list_orders():
    """Order history, newest first. Query: status, limit, offset."""
    db_session = get_session()

    status = request.args.get('status')
    status = order_service.parse_status(status) if status else None
    limit = request.args.get('limit', 20, type=int)
    offset = request.args.get('offset', 0, type=int)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    offset = max(0, offset)

    orders, total = order_service.list_orders(db_session, g.user_id, status, limit, offset)
    return jsonify({
        'items': [order_service.order_to_dict(order) for order in orders],
        'total': total,
        'limit': limit,
        'offset': offset,
    })


@orders_bp.route('/<int:order_id>', methods=['GET'])
@require_login
def get_order(order_id):
    db_session = get_session()
    order = order_service.get_order(db_session, order_id, g.user_id)
    return jsonify(order_service.order_to_dict(order))


@orders_bp.route('/<int:order_id>/cancel', methods=['POST'])
@require_login
def cancel_order(order_id):
    """Cancel a pending or processing order: {"reason": "..."}."""
    db_session = get_session()
    payload = json_payload()
    reason = payload.get('reason')
    if reason is not None and not isinstance(reason, str):
        raise ValidationError('reason must be a string')

    try:
        order = order_service.cancel_order(
            db_session, order_id, g.user_id, reason=reason, gateway=get_payment_gateway()
        )
    except CheckoutError:
        db_session.rollback()
        raise
    return jsonify(order_service.order_to_dict(order))
