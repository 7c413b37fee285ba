"""
Checkout orchestrator.

Turns a user's cart into an immutable order:

    DRAFT -> VALIDATING -> RESERVING_STOCK -> AUTHORIZING_PAYMENT -> COMMITTED
                 |               |                    |
                 +------------ REJECTED / FAILED -----+

Each step runs in its own short transaction and the CheckoutAttempt row
is the compensating-action log: stock decrements are recorded as HELD
StockReservation rows before payment is requested, so a crash between
reservation and commit leaves a trail the recovery sweep can undo.
The payment call itself never runs inside a database transaction.
"""
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from datetime import datetime
from typing import Optional, List, Dict, Any

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from tenacity import Retrying, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log

from cartflow.models import (
    CheckoutAttempt, CheckoutState, Order, OrderItem, OrderStatus, PaymentStatus, AuditAction
)
from cartflow.exceptions import (
    CheckoutError, BusinessRuleViolation, ResourceConflict, InsufficientStockError,
    ExternalFailure, FatalError, ValidationError, ReasonCode
)
from cartflow.services import (
    audit_service, cart_service, catalog_service, coupon_service, inventory_service, order_service
)
from cartflow.services.payment_gateway import (
    PaymentGatewayError, PaymentTimeout, get_payment_gateway, void_payment
)
from cartflow.services.pricing_service import (
    effective_price, line_total, round_money, shipping_cost, tax_amount, grand_total, ZERO
)
from cartflow.utils.clock import utcnow
from cartflow.utils.metrics import (
    checkout_attempts_total, stock_reservation_conflicts_total, checkout_duration_seconds
)

logger = logging.getLogger(__name__)

IN_FLIGHT_STATES = tuple(state for state in CheckoutState if not state.is_terminal)
RECLAIMABLE_STATES = tuple(state for state in CheckoutState if state.is_reclaimable)


@dataclass
class CheckoutPolicy:
    """Pricing and retry settings for a checkout."""
    shipping_flat_fee: Decimal = ZERO
    free_shipping_min_items: int = 0
    tax_rate: Decimal = Decimal('0')
    strict_coupons: bool = False
    reservation_retry_attempts: int = 3
    reservation_retry_wait: float = 0.1

    @classmethod
    def from_config(cls, config) -> 'CheckoutPolicy':
        return cls(
            shipping_flat_fee=round_money(config.get('SHIPPING_FLAT_FEE', '0')),
            free_shipping_min_items=int(config.get('FREE_SHIPPING_MIN_ITEMS', 0)),
            tax_rate=Decimal(str(config.get('TAX_RATE', '0'))),
            strict_coupons=bool(config.get('STRICT_COUPONS', False)),
            reservation_retry_attempts=max(1, int(config.get('RESERVATION_RETRY_ATTEMPTS', 3))),
            reservation_retry_wait=float(config.get('RESERVATION_RETRY_WAIT_SECONDS', 0.1)),
        )


@dataclass
class CheckoutQuote:
    """Frozen price snapshot produced by the validating step."""
    lines: List[Dict[str, Any]]
    subtotal: Decimal
    discount: Decimal
    shipping: Decimal
    tax: Decimal
    grand_total: Decimal
    coupon_code: Optional[str]
    shipping_address: dict
    billing_address: dict
    cart_version: int
    warnings: List[dict] = field(default_factory=list)


@dataclass
class CheckoutResult:
    order: Order
    replayed: bool = False
    warnings: List[dict] = field(default_factory=list)


def place_order(
    session,
    user_id: int,
    shipping_address_id: int,
    payment_method_ref: str,
    billing_address_id: Optional[int] = None,
    idempotency_key: Optional[str] = None,
    cart_version: Optional[int] = None,
    strict_coupon: Optional[bool] = None,
    gateway=None,
    policy: Optional[CheckoutPolicy] = None,
    now: Optional[datetime] = None,
) -> CheckoutResult:
    """
    Run the checkout pipeline for the user's cart.

    A key whose attempt already committed returns that order with
    replayed=True and touches nothing. Without idempotency_key the key is
    derived from the cart id and cart_version, the version the client last
    read. A resubmit of that version after the commit cleared the cart
    replays the order; a cart edited since that read is CART_MODIFIED.

    Raises:
        ValidationError, NotFoundError, BusinessRuleViolation: attempt REJECTED.
        InsufficientStockError: after the bounded reservation retry.
        ResourceConflict: CHECKOUT_IN_PROGRESS, CART_MODIFIED, lost coupon race.
        ExternalFailure: payment declined, timed out or unreachable.
        FatalError: storage failure; held stock is left to the recovery sweep.
    """
    if not payment_method_ref or not isinstance(payment_method_ref, str):
        raise ValidationError('payment_method_ref is required')

    if policy is None:
        policy = CheckoutPolicy.from_config(current_app.config)
    gateway = gateway or get_payment_gateway()
    strict = policy.strict_coupons if strict_coupon is None else strict_coupon
    now = now or utcnow()
    started = time.monotonic()

    try:
        attempt_id, key, replay = _claim_attempt(session, user_id, idempotency_key, cart_version)
    except ResourceConflict as e:
        outcome = 'in_progress' if e.reason == ReasonCode.CHECKOUT_IN_PROGRESS else 'rejected'
        checkout_attempts_total.labels(outcome=outcome).inc()
        raise
    if replay is not None:
        checkout_attempts_total.labels(outcome='replayed').inc()
        return replay

    payment_reference = None
    try:
        # Draft -> Validating
        try:
            quote = _validate(session, attempt_id, user_id, shipping_address_id, billing_address_id,
                              strict, policy, now)
        except CheckoutError as e:
            _finish(session, attempt_id, CheckoutState.REJECTED, e.reason)
            checkout_attempts_total.labels(outcome='rejected').inc()
            raise

        # Validating -> ReservingStock -> AuthorizingPayment
        try:
            _reserve_with_retry(session, attempt_id, quote.lines, policy)
        except InsufficientStockError:
            _finish(session, attempt_id, CheckoutState.REJECTED, ReasonCode.INSUFFICIENT_STOCK)
            checkout_attempts_total.labels(outcome='rejected').inc()
            raise

        # AuthorizingPayment: no transaction is open during the gateway call
        try:
            payment_reference = _authorize_payment(gateway, quote.grand_total, payment_method_ref, key)
            _record_authorization(session, attempt_id, payment_reference)
        except CheckoutError as e:
            _compensate(session, attempt_id, e.reason, payment_reference, gateway)
            checkout_attempts_total.labels(outcome='failed').inc()
            raise

        # AuthorizingPayment -> Committed
        try:
            order = _commit_order(session, attempt_id, key, user_id, quote, payment_method_ref,
                                  payment_reference, now)
        except CheckoutError as e:
            _compensate(session, attempt_id, e.reason, payment_reference, gateway)
            checkout_attempts_total.labels(outcome='failed').inc()
            raise

    except CheckoutError:
        raise
    except SQLAlchemyError as e:
        logger.exception(f"[CHECKOUT] attempt={attempt_id} storage failure")
        _compensate(session, attempt_id, ReasonCode.COMMIT_FAILED, payment_reference, gateway)
        checkout_attempts_total.labels(outcome='failed').inc()
        raise FatalError() from e
    except Exception:
        logger.exception(f"[CHECKOUT] attempt={attempt_id} aborted by unexpected error")
        _compensate(session, attempt_id, ReasonCode.INTERNAL_ERROR, payment_reference, gateway)
        checkout_attempts_total.labels(outcome='failed').inc()
        raise
    finally:
        checkout_duration_seconds.observe(time.monotonic() - started)

    checkout_attempts_total.labels(outcome='committed').inc()
    logger.info(f"[CHECKOUT] attempt={attempt_id} COMMITTED order={order.order_number} total={quote.grand_total}")
    return CheckoutResult(order=order, warnings=quote.warnings)


# Attempt record --------------------------------------------------------------

def _claim_attempt(session, user_id: int, idempotency_key: Optional[str], cart_version: Optional[int]):
    """
    Create or reclaim the attempt row for this key.

    Returns (attempt_id, key, replay) where replay is a CheckoutResult when
    the key already produced an order.
    """
    cart = cart_service.get_cart(session, user_id)
    if idempotency_key is not None:
        key = idempotency_key.strip()
        if not key or len(key) > 128:
            raise ValidationError('Idempotency key must be 1-128 characters')
    elif cart is not None:
        if cart_version is None:
            cart_version = cart.version
        key = f"cart-{cart.id}-v{cart_version}"
    else:
        key = None

    if key:
        existing = session.query(CheckoutAttempt).filter(CheckoutAttempt.idempotency_key == key).first()
        if existing:
            return _resume_existing(session, existing, user_id)

    if idempotency_key is None and cart is not None and not cart.items:
        # An untouched cart emptied by a commit replays that commit
        committed = session.query(CheckoutAttempt).filter(
            CheckoutAttempt.cart_id == cart.id,
            CheckoutAttempt.cleared_cart_version == cart.version,
            CheckoutAttempt.state == CheckoutState.COMMITTED,
        ).first()
        if committed:
            return _resume_existing(session, committed, user_id)

    if cart is None or not cart.items:
        session.rollback()
        raise BusinessRuleViolation('Cart is empty', ReasonCode.EMPTY_CART)

    if cart_version is not None and cart_version != cart.version:
        session.rollback()
        raise ResourceConflict(
            'Cart changed since it was last read',
            ReasonCode.CART_MODIFIED,
            payload={'cart_version': cart.version}
        )

    attempt = CheckoutAttempt(
        idempotency_key=key,
        user_id=user_id,
        cart_id=cart.id,
        cart_version=cart.version,
        state=CheckoutState.DRAFT,
    )
    session.add(attempt)
    try:
        session.flush()
        attempt_id = attempt.id
        session.commit()
    except IntegrityError:
        # Same key inserted concurrently
        session.rollback()
        existing = session.query(CheckoutAttempt).filter(CheckoutAttempt.idempotency_key == key).first()
        if existing is None:
            raise
        return _resume_existing(session, existing, user_id)

    logger.info(f"[CHECKOUT] attempt={attempt_id} key={key} DRAFT cart_version={cart.version}")
    return attempt_id, key, None


def _resume_existing(session, existing: CheckoutAttempt, user_id: int):
    key = existing.idempotency_key
    if existing.user_id != user_id:
        session.rollback()
        raise ValidationError('Idempotency key was already used by another user', ReasonCode.IDEMPOTENCY_KEY_REUSED)

    if existing.state == CheckoutState.COMMITTED:
        logger.info(f"[CHECKOUT] attempt={existing.id} key={key} replaying order {existing.order_id}")
        return existing.id, key, CheckoutResult(order=existing.order, replayed=True)

    if existing.state.is_reclaimable:
        attempt_id = existing.id
        reclaimed = session.query(CheckoutAttempt).filter(
            CheckoutAttempt.id == attempt_id,
            CheckoutAttempt.state.in_(RECLAIMABLE_STATES),
        ).update(
            {
                CheckoutAttempt.state: CheckoutState.DRAFT,
                CheckoutAttempt.reason: None,
                CheckoutAttempt.payment_reference: None,
                CheckoutAttempt.grand_total_amount: None,
                CheckoutAttempt.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
        session.commit()
        if reclaimed == 1:
            logger.info(f"[CHECKOUT] attempt={attempt_id} key={key} reclaimed after failure")
            return attempt_id, key, None

    session.rollback()
    raise ResourceConflict('A checkout with this key is already in progress', ReasonCode.CHECKOUT_IN_PROGRESS)


def _set_state(session, attempt_id: int, state: CheckoutState, **values) -> None:
    values = {getattr(CheckoutAttempt, name): value for name, value in values.items()}
    values[CheckoutAttempt.state] = state
    values[CheckoutAttempt.updated_at] = utcnow()
    session.query(CheckoutAttempt).filter(CheckoutAttempt.id == attempt_id).update(
        values, synchronize_session=False
    )
    logger.info(f"[CHECKOUT] attempt={attempt_id} -> {state.value}")


def _finish(session, attempt_id: int, state: CheckoutState, reason) -> None:
    """Move an attempt that holds no stock to a terminal failure state."""
    session.rollback()
    _set_state(session, attempt_id, state, reason=_reason_value(reason))
    session.commit()


def _reason_value(reason) -> Optional[str]:
    if reason is None:
        return None
    return reason.value if isinstance(reason, ReasonCode) else str(reason)


# Steps ---------------------------------------------------------------------------

def _validate(session, attempt_id, user_id, shipping_address_id, billing_address_id,
              strict: bool, policy: CheckoutPolicy, now: datetime) -> CheckoutQuote:
    """Re-read the cart, re-price it and re-validate its coupon."""
    _set_state(session, attempt_id, CheckoutState.VALIDATING)

    cart = cart_service.get_cart(session, user_id)
    if cart is None or not cart.items:
        raise BusinessRuleViolation('Cart is empty', ReasonCode.EMPTY_CART)

    shipping_address = catalog_service.get_address(session, shipping_address_id, user_id)
    if billing_address_id is not None:
        billing_address = catalog_service.get_address(session, billing_address_id, user_id)
    else:
        billing_address = dict(shipping_address)

    lines = []
    subtotal = ZERO
    for item in cart.items:
        variant = item.variant
        if not variant.is_active:
            raise BusinessRuleViolation(
                f'Variant {variant.sku} is no longer available',
                ReasonCode.VARIANT_INACTIVE,
                payload={'variant_id': variant.id}
            )
        unit_price = effective_price(variant, now)
        line_subtotal = line_total(unit_price, item.quantity)
        lines.append({
            'variant_id': variant.id,
            'sku': variant.sku,
            'product_name': variant.product_name,
            'quantity': item.quantity,
            'unit_price': unit_price,
            'line_subtotal': line_subtotal,
        })
        subtotal += line_subtotal
    subtotal = round_money(subtotal)

    coupon_code = None
    discount = ZERO
    warnings = []
    if cart.applied_coupon_code:
        validation = coupon_service.validate_coupon(session, cart.applied_coupon_code, subtotal, now)
        if validation.is_valid:
            coupon_code = validation.code
            discount = validation.discount
        elif strict:
            raise BusinessRuleViolation(
                f'Coupon {validation.code} is no longer valid',
                ReasonCode.COUPON_NO_LONGER_VALID,
                payload={'code': validation.code, 'detail': validation.reason.value}
            )
        else:
            logger.warning(f"[CHECKOUT] attempt={attempt_id} dropping coupon {validation.code}: {validation.reason.value}")
            warnings.append({
                'reason': ReasonCode.COUPON_NO_LONGER_VALID.value,
                'code': validation.code,
                'detail': validation.reason.value,
            })

    item_count = sum(line['quantity'] for line in lines)
    shipping = shipping_cost(item_count, policy.shipping_flat_fee, policy.free_shipping_min_items)
    tax = tax_amount(subtotal, policy.tax_rate)
    total = grand_total(subtotal, discount, shipping, tax)

    quote = CheckoutQuote(
        lines=lines,
        subtotal=subtotal,
        discount=discount,
        shipping=shipping,
        tax=tax,
        grand_total=total,
        coupon_code=coupon_code,
        shipping_address=shipping_address,
        billing_address=billing_address,
        cart_version=cart.version,
        warnings=warnings,
    )
    session.query(CheckoutAttempt).filter(CheckoutAttempt.id == attempt_id).update(
        {
            CheckoutAttempt.cart_id: cart.id,
            CheckoutAttempt.cart_version: cart.version,
            CheckoutAttempt.grand_total_amount: total,
        },
        synchronize_session=False,
    )
    session.commit()
    return quote


def _reserve_once(session, attempt_id: int, lines: List[Dict[str, Any]]) -> None:
    """One all-or-nothing reservation transaction."""
    try:
        _set_state(session, attempt_id, CheckoutState.RESERVING_STOCK)
        reserved = inventory_service.reserve_all(
            session, [(line['variant_id'], line['quantity']) for line in lines]
        )
        inventory_service.hold_reservations(session, attempt_id, reserved)
        _set_state(session, attempt_id, CheckoutState.AUTHORIZING_PAYMENT)
        session.commit()
    except InsufficientStockError as e:
        session.rollback()
        stock_reservation_conflicts_total.inc()
        logger.info(f"[CHECKOUT] attempt={attempt_id} reservation refused for variant {e.variant_id}")
        raise


def _reserve_with_retry(session, attempt_id: int, lines, policy: CheckoutPolicy) -> None:
    """Retry only the reservation step, a bounded number of times."""
    wait = policy.reservation_retry_wait
    retrying = Retrying(
        reraise=True,
        stop=stop_after_attempt(policy.reservation_retry_attempts),
        wait=wait_exponential(multiplier=wait, min=wait, max=wait * 10),
        retry=retry_if_exception_type(InsufficientStockError),
        before_sleep=before_sleep_log(logger, logging.INFO),
    )
    retrying(_reserve_once, session, attempt_id, lines)


def _authorize_payment(gateway, amount: Decimal, payment_method_ref: str, key: str) -> str:
    try:
        result = gateway.authorize(amount, payment_method_ref, key)
    except PaymentTimeout as e:
        raise ExternalFailure('Payment authorization timed out', ReasonCode.PAYMENT_TIMEOUT) from e
    except PaymentGatewayError as e:
        raise ExternalFailure('Payment service is unavailable', ReasonCode.PAYMENT_UNAVAILABLE) from e

    if not result.approved:
        raise ExternalFailure(
            'Payment was declined',
            ReasonCode.PAYMENT_DECLINED,
            payload={'gateway_reason': result.reason}
        )
    return result.reference


def _record_authorization(session, attempt_id: int, payment_reference: str) -> None:
    """Persist the authorization so a later sweep can void it."""
    recorded = session.query(CheckoutAttempt).filter(
        CheckoutAttempt.id == attempt_id,
        CheckoutAttempt.state == CheckoutState.AUTHORIZING_PAYMENT,
    ).update(
        {CheckoutAttempt.payment_reference: payment_reference, CheckoutAttempt.updated_at: utcnow()},
        synchronize_session=False,
    )
    session.commit()
    if recorded != 1:
        raise ResourceConflict('Stock reservation expired during payment', ReasonCode.RESERVATION_EXPIRED)


def _commit_order(session, attempt_id: int, key: str, user_id: int, quote: CheckoutQuote,
                  payment_method_ref: str, payment_reference: str, now: datetime) -> Order:
    """Order, items, coupon usage, reservation consumption and cart clearing in one transaction."""
    claimed = session.query(CheckoutAttempt).filter(
        CheckoutAttempt.id == attempt_id,
        CheckoutAttempt.state == CheckoutState.AUTHORIZING_PAYMENT,
    ).update(
        {CheckoutAttempt.state: CheckoutState.COMMITTED, CheckoutAttempt.updated_at: utcnow()},
        synchronize_session=False,
    )
    if claimed != 1:
        raise ResourceConflict('Stock reservation expired during payment', ReasonCode.RESERVATION_EXPIRED)

    cart = cart_service.get_cart(session, user_id)
    if cart is None or cart.version != quote.cart_version:
        raise ResourceConflict('Cart changed during checkout', ReasonCode.CART_MODIFIED)

    if quote.coupon_code and not coupon_service.redeem_coupon(session, quote.coupon_code):
        raise ResourceConflict(
            f'Coupon {quote.coupon_code} reached its usage limit',
            ReasonCode.COUPON_USAGE_LIMIT_REACHED,
            payload={'code': quote.coupon_code}
        )

    order = Order(
        user_id=user_id,
        order_number=order_service.generate_order_number(session, now),
        idempotency_key=key,
        shipping_address=quote.shipping_address,
        billing_address=quote.billing_address,
        payment_method_ref=payment_method_ref,
        payment_reference=payment_reference,
        payment_status=PaymentStatus.AUTHORIZED.value,
        subtotal_amount=quote.subtotal,
        discount_amount=quote.discount,
        shipping_cost=quote.shipping,
        tax_amount=quote.tax,
        grand_total_amount=quote.grand_total,
        applied_coupon_code=quote.coupon_code,
        status=OrderStatus.PENDING,
    )
    for line in quote.lines:
        order.items.append(OrderItem(
            variant_id=line['variant_id'],
            sku=line['sku'],
            product_name=line['product_name'],
            quantity=line['quantity'],
            unit_price=line['unit_price'],
            line_subtotal=line['line_subtotal'],
        ))
    session.add(order)
    session.flush()

    inventory_service.consume_reservations(session, attempt_id)
    cart_service.clear_cart(session, cart)
    session.query(CheckoutAttempt).filter(CheckoutAttempt.id == attempt_id).update(
        {CheckoutAttempt.order_id: order.id, CheckoutAttempt.cleared_cart_version: cart.version},
        synchronize_session=False
    )

    audit_service.log_action(
        session,
        AuditAction.CHECKOUT_COMMITTED,
        resource_type='order',
        resource_id=order.id,
        details={
            'order_number': order.order_number,
            'grand_total': str(quote.grand_total),
            'coupon': quote.coupon_code,
            'attempt_id': attempt_id,
        },
        user_id=user_id,
    )
    session.commit()
    return order


def _compensate(session, attempt_id: int, reason, payment_reference: Optional[str], gateway) -> None:
    """
    Release held stock, fail the attempt and void any authorization.

    When storage is down the attempt stays in its in-flight state with its
    reservations HELD; the recovery sweep finishes the job.
    """
    session.rollback()
    try:
        inventory_service.release_reservations(session, attempt_id)
        session.query(CheckoutAttempt).filter(
            CheckoutAttempt.id == attempt_id,
            CheckoutAttempt.state.in_(IN_FLIGHT_STATES),
        ).update(
            {
                CheckoutAttempt.state: CheckoutState.FAILED,
                CheckoutAttempt.reason: _reason_value(reason),
                CheckoutAttempt.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
        session.commit()
        logger.warning(f"[CHECKOUT] attempt={attempt_id} -> FAILED ({_reason_value(reason)}), reservations released")
    except SQLAlchemyError:
        session.rollback()
        logger.exception(f"[CHECKOUT] attempt={attempt_id} compensation failed, left for recovery sweep")

    if payment_reference:
        void_payment(gateway, payment_reference)

