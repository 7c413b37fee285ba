"""Cart blueprint - JSON API over the cart aggregate."""
from flask import Blueprint, jsonify, g, current_app

from cartflow.database import get_session
from cartflow.exceptions import CheckoutError, ValidationError
from cartflow.middleware import require_login
from cartflow.services import cart_service
from cartflow.blueprints._helpers import json_payload, parse_id

cart_bp = Blueprint('cart', __name__, url_prefix='/cart')


def _cart_response(db_session, status=200):
    cart = cart_service.get_cart(db_session, g.user_id)
    return jsonify(cart_service.cart_to_dict(db_session, cart)), status


@cart_bp.route('', methods=['GET'])
@require_login
def view_cart():
    """Cart with live prices, coupon re-validation and totals."""
    return _cart_response(get_session())


@cart_bp.route('', methods=['DELETE'])
@require_login
def clear_cart():
    db_session = get_session()
    try:
        cart = cart_service.get_cart(db_session, g.user_id)
        if cart:
            cart_service.clear_cart(db_session, cart)
        db_session.commit()
    except CheckoutError:
        db_session.rollback()
        raise
    return _cart_response(db_session)


@cart_bp.route('/items', methods=['POST'])
@require_login
def add_item():
    """Add a variant to the cart: {"variant_id": 1, "quantity": 2}."""
    db_session = get_session()
    try:
        payload = json_payload()
        if payload.get('variant_id') is None:
            raise ValidationError('variant_id is required')
        variant_id = parse_id(payload.get('variant_id'), 'variant_id')

        cart_service.add_item(db_session, g.user_id, variant_id, payload.get('quantity', 1))
        db_session.commit()
    except CheckoutError as e:
        db_session.rollback()
        current_app.logger.warning(f"[CART] add_item rejected for user {g.user_id}: {e.message}")
        raise
    return _cart_response(db_session, 201)


@cart_bp.route('/items/<int:variant_id>', methods=['PATCH'])
@require_login
def update_item(variant_id):
    """Set a line quantity: {"quantity": 3}. Zero removes the line."""
    db_session = get_session()
    try:
        payload = json_payload()
        if 'quantity' not in payload:
            raise ValidationError('quantity is required')
        cart_service.update_item(db_session, g.user_id, variant_id, payload['quantity'])
        db_session.commit()
    except CheckoutError:
        db_session.rollback()
        raise
    return _cart_response(db_session)


@cart_bp.route('/items/<int:variant_id>', methods=['DELETE'])
@require_login
def remove_item(variant_id):
    db_session = get_session()
    try:
        cart_service.remove_item(db_session, g.user_id, variant_id)
        db_session.commit()
    except CheckoutError:
        db_session.rollback()
        raise
    return _cart_response(db_session)


@cart_bp.route('/coupon', methods=['POST'])
@require_login
def apply_coupon():
    """Attach a coupon code: {"code": "SAVE10"}."""
    db_session = get_session()
    try:
        payload = json_payload()
        cart_service.apply_coupon(db_session, g.user_id, payload.get('code'))
        db_session.commit()
    except CheckoutError:
        db_session.rollback()
        raise
    return _cart_response(db_session)


@cart_bp.route('/coupon', methods=['DELETE'])
@require_login
def remove_coupon():
    db_session = get_session()
    try:
        cart_service.remove_coupon(db_session, g.user_id)
        db_session.commit()
    except CheckoutError:
        db_session.rollback()
        raise
    return _cart_response(db_session)
