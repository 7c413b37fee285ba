"""Coupons blueprint."""
from flask import Blueprint, jsonify, g

from cartflow.database import get_session
from cartflow.middleware import require_login
from cartflow.services import cart_service, coupon_service
from cartflow.utils.number_format import parse_money
from cartflow.blueprints._helpers import json_payload

coupons_bp = Blueprint('coupons', __name__, url_prefix='/coupons')


@coupons_bp.route('/validate', methods=['POST'])
@require_login
def validate():
    """
    Validate a coupon code.

    Body: {"code": "SAVE10", "subtotal": "100.00"}. Without subtotal the
    caller's live cart subtotal is used. A rejection is a 200 with
    valid=false and the reason code; nothing is written.
    """
    db_session = get_session()
    payload = json_payload()
    code = coupon_service.normalize_code(payload.get('code'))

    if payload.get('subtotal') is not None:
        subtotal = parse_money(payload['subtotal'], 'subtotal')
    else:
        cart = cart_service.get_cart(db_session, g.user_id)
        subtotal = cart_service.compute_subtotal(cart) if cart else parse_money(0)

    validation = coupon_service.validate_coupon(db_session, code, subtotal)
    data = validation.to_dict()
    data['subtotal'] = str(subtotal)
    return jsonify(data), 200
