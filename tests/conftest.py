import pytest
from datetime import timedelta
from decimal import Decimal
import os
import tempfile
import uuid

# Tests run against a throwaway SQLite file so worker threads can share it
_TEST_DB_DIR = tempfile.mkdtemp(prefix='cartflow-tests-')
os.environ['DATABASE_URL'] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'cartflow.db')}"

from cartflow import create_app
from cartflow import database
from cartflow.database import Base, create_schema
from cartflow.models import ProductVariant, InventoryItem, Address, Coupon, DiscountType
from cartflow.services.checkout_service import CheckoutPolicy
from cartflow.services.payment_gateway import AuthorizationResult
from cartflow.utils.clock import utcnow

USER_ID = 1001
OTHER_USER_ID = 1002


class FakePaymentGateway:
    """In-memory payment collaborator with switchable outcomes."""

    def __init__(self):
        self.approve = True
        self.decline_reason = 'card_declined'
        self.error = None
        self.on_authorize = None
        self.authorizations = []
        self.voided = []

    def authorize(self, amount, payment_method_ref, idempotency_key=None):
        self.authorizations.append((amount, payment_method_ref, idempotency_key))
        if self.on_authorize:
            self.on_authorize()
        if self.error:
            raise self.error
        if not self.approve:
            return AuthorizationResult(approved=False, reason=self.decline_reason)
        return AuthorizationResult(approved=True, reference=f"AUTH-{uuid.uuid4().hex[:10]}")

    def void(self, reference):
        self.voided.append(reference)


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing."""
    app = create_app('config.TestConfig')
    create_schema()
    return app


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def auth_client(client):
    """Test client logged in as USER_ID."""
    with client.session_transaction() as sess:
        sess['user_id'] = USER_ID
    return client


@pytest.fixture(scope='function')
def session(app):
    """Database session; every table is emptied afterwards."""
    session = database.get_session()
    yield session
    session.rollback()
    for table in reversed(Base.metadata.sorted_tables):
        session.execute(table.delete())
    session.commit()
    database.db_session.remove()


@pytest.fixture(scope='function')
def gateway(app):
    """Fake payment gateway, also installed on the app for HTTP tests."""
    fake = FakePaymentGateway()
    previous = app.extensions.get('payment_gateway')
    app.extensions['payment_gateway'] = fake
    yield fake
    app.extensions['payment_gateway'] = previous


@pytest.fixture(scope='function')
def policy():
    """Zero shipping and tax, fast retries."""
    return CheckoutPolicy(reservation_retry_attempts=2, reservation_retry_wait=0.01)


@pytest.fixture(scope='function')
def make_variant(session):
    """Factory for active variants with stock."""
    def _make(price='50.00', stock=10, sku=None, **kwargs):
        variant = ProductVariant(
            sku=sku or f'SKU-{uuid.uuid4().hex[:8]}',
            product_name=kwargs.pop('product_name', 'Test Product'),
            price=Decimal(price),
            is_active=kwargs.pop('is_active', True),
            **kwargs
        )
        variant.stock = InventoryItem(available_qty=stock)
        session.add(variant)
        session.commit()
        return variant
    return _make


@pytest.fixture(scope='function')
def variant(make_variant):
    """Variant priced 50.00 with 10 units in stock."""
    return make_variant(price='50.00', stock=10, product_name='Blue T-Shirt M')


@pytest.fixture(scope='function')
def make_coupon(session):
    """Factory for coupons valid from yesterday to next month."""
    def _make(code='SAVE10', discount_type=DiscountType.PERCENTAGE, discount_value='10',
              minimum_order_value=None, maximum_discount_amount=None, usage_limit=None,
              usage_count=0, is_active=True, valid_from=None, valid_until=None):
        now = utcnow()
        coupon = Coupon(
            code=code,
            discount_type=discount_type.value,
            discount_value=Decimal(discount_value),
            minimum_order_value=Decimal(minimum_order_value) if minimum_order_value is not None else None,
            maximum_discount_amount=Decimal(maximum_discount_amount) if maximum_discount_amount is not None else None,
            usage_limit=usage_limit,
            usage_count=usage_count,
            is_active=is_active,
            valid_from=valid_from or now - timedelta(days=1),
            valid_until=valid_until or now + timedelta(days=30),
        )
        session.add(coupon)
        session.commit()
        return coupon
    return _make


@pytest.fixture(scope='function')
def save10(make_coupon):
    """10% off, minimum order 50.00, capped at 20.00."""
    return make_coupon(code='SAVE10', discount_value='10', minimum_order_value='50.00',
                       maximum_discount_amount='20.00', usage_limit=100)


@pytest.fixture(scope='function')
def make_address(session):
    def _make(user_id=USER_ID, city='Pune'):
        address = Address(
            user_id=user_id,
            full_name='Asha Rao',
            address_line1='12 MG Road',
            address_line2='Flat 4B',
            city=city,
            state='Maharashtra',
            postal_code='411001',
            country='India',
            phone_number='+91-9000000000',
        )
        session.add(address)
        session.commit()
        return address
    return _make


@pytest.fixture(scope='function')
def address(make_address):
    return make_address()
