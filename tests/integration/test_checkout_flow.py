"""
Integration tests for the checkout pipeline: cart -> coupon -> order.
"""

import pytest
from decimal import Decimal

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from cartflow import database
from cartflow.exceptions import (
    BusinessRuleViolation, ExternalFailure, FatalError, InsufficientStockError, NotFoundError,
    ResourceConflict, ValidationError, ReasonCode
)
from cartflow.models import (
    AuditLog, AuditAction, CheckoutAttempt, CheckoutState, Coupon, Order, OrderStatus,
    ProductVariant, StockReservation, ReservationStatus
)
from cartflow.services import cart_service, checkout_service, inventory_service, order_service
from cartflow.services.checkout_service import CheckoutPolicy
from cartflow.services.payment_gateway import PaymentGatewayError, PaymentTimeout
from tests.conftest import USER_ID, OTHER_USER_ID


def _fill_cart(session, variant_id, quantity=2, coupon=None, user_id=USER_ID):
    cart_service.add_item(session, user_id, variant_id, quantity)
    if coupon:
        cart_service.apply_coupon(session, user_id, coupon)
    session.commit()


def _checkout(session, address_id, gateway, policy, **kwargs):
    return checkout_service.place_order(
        session, USER_ID, address_id, 'pm_card_visa', gateway=gateway, policy=policy, **kwargs
    )


def _coupon_usage(session, code='SAVE10'):
    return session.query(Coupon.usage_count).filter(Coupon.code == code).scalar()


def _attempt(session, user_id=USER_ID):
    return session.query(CheckoutAttempt).filter(CheckoutAttempt.user_id == user_id).one()


class TestSuccessfulCheckout:
    """Tests for the happy path."""

    def test_save10_order(self, session, variant, save10, address, gateway, policy):
        _fill_cart(session, variant.id, 2, coupon='SAVE10')

        result = _checkout(session, address.id, gateway, policy)
        order = result.order

        assert result.replayed is False
        assert result.warnings == []
        assert order.status == OrderStatus.PENDING
        assert order.subtotal_amount == Decimal('100.00')
        assert order.discount_amount == Decimal('10.00')
        assert order.grand_total_amount == Decimal('90.00')
        assert order.applied_coupon_code == 'SAVE10'
        assert order.payment_status == 'AUTHORIZED'
        assert order.shipping_address == address.to_snapshot()
        assert order.billing_address == order.shipping_address

        assert len(order.items) == 1
        item = order.items[0]
        assert (item.sku, item.quantity, item.unit_price) == (variant.sku, 2, Decimal('50.00'))

        assert gateway.authorizations[0][0] == Decimal('90.00')
        assert order.payment_reference.startswith('AUTH-')

    def test_commit_side_effects(self, session, variant, save10, address, gateway, policy):
        _fill_cart(session, variant.id, 2, coupon='SAVE10')
        order_id = _checkout(session, address.id, gateway, policy).order.id

        assert inventory_service.get_available(session, variant.id) == 8
        assert _coupon_usage(session) == 1

        cart = cart_service.get_cart(session, USER_ID)
        assert cart.items == []
        assert cart.applied_coupon_code is None

        attempt = _attempt(session)
        assert attempt.state == CheckoutState.COMMITTED
        assert attempt.order_id == order_id
        assert attempt.idempotency_key.startswith(f'cart-{cart.id}-v')
        assert [r.status for r in attempt.reservations] == [ReservationStatus.CONSUMED]

        audit = session.query(AuditLog).filter(AuditLog.action == AuditAction.CHECKOUT_COMMITTED).one()
        assert audit.resource_id == order_id
        assert audit.user_id == USER_ID

    def test_shipping_and_tax(self, session, variant, save10, address, gateway):
        _fill_cart(session, variant.id, 2, coupon='SAVE10')
        policy = CheckoutPolicy(shipping_flat_fee=Decimal('5.00'), free_shipping_min_items=5,
                                tax_rate=Decimal('0.21'), reservation_retry_wait=0.01)

        order = _checkout(session, address.id, gateway, policy).order

        assert order.shipping_cost == Decimal('5.00')
        assert order.tax_amount == Decimal('21.00')
        assert order.grand_total_amount == Decimal('116.00')

    def test_free_shipping_threshold(self, session, make_variant, address, gateway):
        cheap = make_variant(price='2.00', stock=10)
        _fill_cart(session, cheap.id, 5)
        policy = CheckoutPolicy(shipping_flat_fee=Decimal('5.00'), free_shipping_min_items=5,
                                reservation_retry_wait=0.01)

        order = _checkout(session, address.id, gateway, policy).order
        assert order.shipping_cost == Decimal('0.00')
        assert order.grand_total_amount == Decimal('10.00')

    def test_order_keeps_price_at_commit(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 2)
        order = _checkout(session, address.id, gateway, policy).order
        order_id = order.id

        product = session.get(ProductVariant, variant.id)
        product.price = Decimal('75.00')
        session.commit()

        order = session.get(Order, order_id)
        assert order.items[0].unit_price == Decimal('50.00')
        assert order.grand_total_amount == Decimal('100.00')

    def test_separate_billing_address(self, session, variant, address, make_address, gateway, policy):
        billing = make_address(city='Mumbai')
        _fill_cart(session, variant.id, 1)

        order = _checkout(session, address.id, gateway, policy, billing_address_id=billing.id).order
        assert order.billing_address['city'] == 'Mumbai'
        assert order.shipping_address['city'] == 'Pune'


class TestRejectedCheckout:
    """Tests for checkouts rejected before any stock is held."""

    def test_empty_cart(self, session, address, gateway, policy):
        with pytest.raises(BusinessRuleViolation) as exc_info:
            _checkout(session, address.id, gateway, policy)
        assert exc_info.value.reason == ReasonCode.EMPTY_CART
        assert gateway.authorizations == []

    def test_missing_payment_method(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 1)
        with pytest.raises(ValidationError):
            checkout_service.place_order(session, USER_ID, address.id, '', gateway=gateway, policy=policy)

    def test_inactive_variant(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 2)
        variant.is_active = False
        session.commit()

        with pytest.raises(BusinessRuleViolation) as exc_info:
            _checkout(session, address.id, gateway, policy)
        assert exc_info.value.reason == ReasonCode.VARIANT_INACTIVE

        attempt = _attempt(session)
        assert attempt.state == CheckoutState.REJECTED
        assert attempt.reason == ReasonCode.VARIANT_INACTIVE.value
        assert inventory_service.get_available(session, variant.id) == 10

    def test_address_of_another_user(self, session, variant, make_address, gateway, policy):
        foreign = make_address(user_id=OTHER_USER_ID)
        _fill_cart(session, variant.id, 1)

        with pytest.raises(NotFoundError) as exc_info:
            _checkout(session, foreign.id, gateway, policy)
        assert exc_info.value.reason == ReasonCode.ADDRESS_NOT_FOUND

    def test_insufficient_stock(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 11)

        with pytest.raises(InsufficientStockError) as exc_info:
            _checkout(session, address.id, gateway, policy)
        assert exc_info.value.status_code == 409

        assert inventory_service.get_available(session, variant.id) == 10
        assert gateway.authorizations == []
        attempt = _attempt(session)
        assert attempt.state == CheckoutState.REJECTED
        assert attempt.reason == ReasonCode.INSUFFICIENT_STOCK.value
        assert session.query(StockReservation).count() == 0

    def test_partial_stock_reserves_nothing(self, session, variant, make_variant, address, gateway, policy):
        scarce = make_variant(price='10.00', stock=1)
        _fill_cart(session, variant.id, 3)
        _fill_cart(session, scarce.id, 2)

        with pytest.raises(InsufficientStockError):
            _checkout(session, address.id, gateway, policy)

        assert inventory_service.get_available(session, variant.id) == 10
        assert inventory_service.get_available(session, scarce.id) == 1


class TestCouponAtCheckout:
    """Tests for coupon re-validation and redemption."""

    def test_usage_limit_reached_drops_discount(self, session, variant, make_coupon, address, gateway, policy):
        make_coupon(code='LAST', usage_limit=1)
        _fill_cart(session, variant.id, 2, coupon='LAST')
        session.query(Coupon).filter(Coupon.code == 'LAST').update({Coupon.usage_count: 1})
        session.commit()

        result = _checkout(session, address.id, gateway, policy)

        assert result.order.discount_amount == Decimal('0.00')
        assert result.order.grand_total_amount == Decimal('100.00')
        assert result.order.applied_coupon_code is None
        assert result.warnings[0]['reason'] == ReasonCode.COUPON_NO_LONGER_VALID.value
        assert result.warnings[0]['detail'] == ReasonCode.COUPON_USAGE_LIMIT_REACHED.value
        assert _coupon_usage(session, 'LAST') == 1

    def test_usage_limit_reached_strict(self, session, variant, make_coupon, address, gateway, policy):
        make_coupon(code='LAST', usage_limit=1)
        _fill_cart(session, variant.id, 2, coupon='LAST')
        session.query(Coupon).filter(Coupon.code == 'LAST').update({Coupon.usage_count: 1})
        session.commit()

        with pytest.raises(BusinessRuleViolation) as exc_info:
            _checkout(session, address.id, gateway, policy, strict_coupon=True)

        assert exc_info.value.reason == ReasonCode.COUPON_NO_LONGER_VALID
        assert exc_info.value.status_code == 422
        assert _attempt(session).state == CheckoutState.REJECTED
        assert inventory_service.get_available(session, variant.id) == 10
        assert session.query(Order).count() == 0

    def test_coupon_minimum_raised_before_checkout(self, session, variant, save10, address, gateway, policy):
        _fill_cart(session, variant.id, 2, coupon='SAVE10')
        session.query(Coupon).filter(Coupon.code == 'SAVE10').update(
            {Coupon.minimum_order_value: Decimal('150.00')}
        )
        session.commit()

        result = _checkout(session, address.id, gateway, policy)
        assert result.order.grand_total_amount == Decimal('100.00')
        assert result.warnings[0]['detail'] == ReasonCode.COUPON_BELOW_MINIMUM_ORDER.value

    def test_losing_last_use_at_commit(self, session, variant, make_coupon, address, gateway, policy):
        make_coupon(code='LAST', usage_limit=1)
        _fill_cart(session, variant.id, 2, coupon='LAST')

        def _someone_else_redeems():
            with Session(bind=database.engine) as other:
                other.query(Coupon).filter(Coupon.code == 'LAST').update({Coupon.usage_count: 1})
                other.commit()

        gateway.on_authorize = _someone_else_redeems

        with pytest.raises(ResourceConflict) as exc_info:
            _checkout(session, address.id, gateway, policy)

        assert exc_info.value.reason == ReasonCode.COUPON_USAGE_LIMIT_REACHED
        assert _coupon_usage(session, 'LAST') == 1
        assert inventory_service.get_available(session, variant.id) == 10
        assert len(gateway.voided) == 1
        assert session.query(Order).count() == 0
        attempt = _attempt(session)
        assert attempt.state == CheckoutState.FAILED
        assert attempt.reason == ReasonCode.COUPON_USAGE_LIMIT_REACHED.value


class TestPaymentFailures:
    """Tests for compensation after stock was reserved."""

    def test_declined_payment_changes_nothing(self, session, variant, save10, address, gateway, policy):
        _fill_cart(session, variant.id, 2, coupon='SAVE10')
        gateway.approve = False

        with pytest.raises(ExternalFailure) as exc_info:
            _checkout(session, address.id, gateway, policy)

        assert exc_info.value.reason == ReasonCode.PAYMENT_DECLINED
        assert exc_info.value.status_code == 402
        assert inventory_service.get_available(session, variant.id) == 10
        assert _coupon_usage(session) == 0
        assert session.query(Order).count() == 0
        assert gateway.voided == []

        cart = cart_service.get_cart(session, USER_ID)
        assert cart.items[0].quantity == 2
        assert cart.applied_coupon_code == 'SAVE10'

        attempt = _attempt(session)
        assert attempt.state == CheckoutState.FAILED
        assert attempt.reason == ReasonCode.PAYMENT_DECLINED.value
        assert [r.status for r in attempt.reservations] == [ReservationStatus.RELEASED]

    @pytest.mark.parametrize('error,reason', [
        (PaymentTimeout('read timed out'), ReasonCode.PAYMENT_TIMEOUT),
        (PaymentGatewayError('connection refused'), ReasonCode.PAYMENT_UNAVAILABLE),
    ])
    def test_gateway_errors(self, session, variant, address, gateway, policy, error, reason):
        _fill_cart(session, variant.id, 2)
        gateway.error = error

        with pytest.raises(ExternalFailure) as exc_info:
            _checkout(session, address.id, gateway, policy)

        assert exc_info.value.reason == reason
        assert inventory_service.get_available(session, variant.id) == 10
        assert _attempt(session).reason == reason.value

    def test_cart_modified_during_payment(self, session, variant, address, gateway, policy):
        variant_id = variant.id
        _fill_cart(session, variant_id, 2)

        def _edit_cart():
            with Session(bind=database.engine) as other:
                cart_service.add_item(other, USER_ID, variant_id, 1)
                other.commit()

        gateway.on_authorize = _edit_cart

        with pytest.raises(ResourceConflict) as exc_info:
            _checkout(session, address.id, gateway, policy)

        assert exc_info.value.reason == ReasonCode.CART_MODIFIED
        assert inventory_service.get_available(session, variant_id) == 10
        assert len(gateway.voided) == 1
        assert session.query(Order).count() == 0
        assert cart_service.get_cart(session, USER_ID).items[0].quantity == 3

    def test_storage_failure_at_commit(self, session, variant, save10, address, gateway, policy, monkeypatch):
        _fill_cart(session, variant.id, 2, coupon='SAVE10')

        def _broken(*args, **kwargs):
            raise OperationalError('SELECT customer_order', {}, Exception('disk I/O error'))

        monkeypatch.setattr(order_service, 'generate_order_number', _broken)

        with pytest.raises(FatalError) as exc_info:
            _checkout(session, address.id, gateway, policy)

        assert exc_info.value.status_code == 503
        assert exc_info.value.reason == ReasonCode.COMMIT_FAILED
        assert inventory_service.get_available(session, variant.id) == 10
        assert _coupon_usage(session) == 0
        assert len(gateway.voided) == 1
        attempt = _attempt(session)
        assert attempt.state == CheckoutState.FAILED
        assert attempt.reason == ReasonCode.COMMIT_FAILED.value


class TestIdempotency:
    """Tests for Idempotency-Key handling."""

    def test_replay_returns_same_order(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 2)

        first = _checkout(session, address.id, gateway, policy, idempotency_key='key-123')
        second = _checkout(session, address.id, gateway, policy, idempotency_key='key-123')

        assert second.replayed is True
        assert second.order.id == first.order.id
        assert session.query(Order).count() == 1
        assert len(gateway.authorizations) == 1
        assert inventory_service.get_available(session, variant.id) == 8
        assert first.order.idempotency_key == 'key-123'

    def test_retry_after_decline_reclaims_key(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 2)
        gateway.approve = False
        with pytest.raises(ExternalFailure):
            _checkout(session, address.id, gateway, policy, idempotency_key='key-retry')

        gateway.approve = True
        result = _checkout(session, address.id, gateway, policy, idempotency_key='key-retry')

        assert result.replayed is False
        assert result.order.idempotency_key == 'key-retry'
        assert inventory_service.get_available(session, variant.id) == 8
        attempt = _attempt(session)
        assert attempt.state == CheckoutState.COMMITTED
        assert attempt.reason is None
        statuses = sorted(r.status.value for r in attempt.reservations)
        assert statuses == ['CONSUMED', 'RELEASED']

    def test_key_of_another_user(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 2)
        _checkout(session, address.id, gateway, policy, idempotency_key='shared')

        with pytest.raises(ValidationError) as exc_info:
            checkout_service.place_order(session, OTHER_USER_ID, address.id, 'pm_card_visa',
                                         idempotency_key='shared', gateway=gateway, policy=policy)
        assert exc_info.value.reason == ReasonCode.IDEMPOTENCY_KEY_REUSED

    def test_key_in_flight(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 2)
        session.add(CheckoutAttempt(idempotency_key='busy', user_id=USER_ID,
                                    state=CheckoutState.AUTHORIZING_PAYMENT))
        session.commit()

        with pytest.raises(ResourceConflict) as exc_info:
            _checkout(session, address.id, gateway, policy, idempotency_key='busy')
        assert exc_info.value.reason == ReasonCode.CHECKOUT_IN_PROGRESS
        assert gateway.authorizations == []

    def test_key_too_long(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 1)
        with pytest.raises(ValidationError):
            _checkout(session, address.id, gateway, policy, idempotency_key='x' * 129)

    def test_resubmit_without_key_after_commit(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 2)

        first = _checkout(session, address.id, gateway, policy)
        second = _checkout(session, address.id, gateway, policy)

        assert first.replayed is False
        assert second.replayed is True
        assert second.order.id == first.order.id
        assert session.query(Order).count() == 1
        assert len(gateway.authorizations) == 1
        assert inventory_service.get_available(session, variant.id) == 8

    def test_resubmit_with_cart_version(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 2)
        version = cart_service.get_cart(session, USER_ID).version

        first = _checkout(session, address.id, gateway, policy, cart_version=version)
        second = _checkout(session, address.id, gateway, policy, cart_version=version)

        assert second.replayed is True
        assert second.order.id == first.order.id
        assert first.order.idempotency_key == f"cart-{_attempt(session).cart_id}-v{version}"
        assert len(gateway.authorizations) == 1

    def test_stale_cart_version(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 2)
        version = cart_service.get_cart(session, USER_ID).version
        _fill_cart(session, variant.id, 1)

        with pytest.raises(ResourceConflict) as exc_info:
            _checkout(session, address.id, gateway, policy, cart_version=version)

        assert exc_info.value.reason == ReasonCode.CART_MODIFIED
        assert gateway.authorizations == []
        assert session.query(CheckoutAttempt).count() == 0

    def test_cart_edited_after_commit_is_a_new_checkout(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 2)
        first = _checkout(session, address.id, gateway, policy)

        _fill_cart(session, variant.id, 1)
        second = _checkout(session, address.id, gateway, policy)

        assert second.replayed is False
        assert second.order.id != first.order.id
        assert inventory_service.get_available(session, variant.id) == 7

    def test_cart_emptied_by_hand_after_commit(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 2)
        _checkout(session, address.id, gateway, policy)

        _fill_cart(session, variant.id, 1)
        cart_service.remove_item(session, USER_ID, variant.id)
        session.commit()

        with pytest.raises(BusinessRuleViolation) as exc_info:
            _checkout(session, address.id, gateway, policy)
        assert exc_info.value.reason == ReasonCode.EMPTY_CART


class TestUnexpectedErrors:
    """Tests for errors outside the checkout error hierarchy."""

    def test_gateway_bug_releases_stock(self, session, variant, address, gateway, policy):
        _fill_cart(session, variant.id, 2)
        gateway.error = RuntimeError('unexpected gateway response')

        with pytest.raises(RuntimeError):
            _checkout(session, address.id, gateway, policy)

        assert inventory_service.get_available(session, variant.id) == 10
        attempt = _attempt(session)
        assert attempt.state == CheckoutState.FAILED
        assert attempt.reason == ReasonCode.INTERNAL_ERROR.value
        assert [r.status for r in attempt.reservations] == [ReservationStatus.RELEASED]
        assert gateway.voided == []

    def test_bug_at_commit_voids_payment(self, session, variant, address, gateway, policy, monkeypatch):
        _fill_cart(session, variant.id, 2)

        def _broken(*args, **kwargs):
            raise ValueError('order number generator misconfigured')

        monkeypatch.setattr(order_service, 'generate_order_number', _broken)

        with pytest.raises(ValueError):
            _checkout(session, address.id, gateway, policy)

        assert inventory_service.get_available(session, variant.id) == 10
        assert len(gateway.voided) == 1
        assert _attempt(session).state == CheckoutState.FAILED
