"""Configuration module for Flask application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '0') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')

    # Session Configuration (Production-safe defaults)
    SESSION_COOKIE_SECURE = os.getenv('SESSION_COOKIE_SECURE', 'false').lower() == 'true'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.getenv('SESSION_COOKIE_SAMESITE', 'Lax')
    PERMANENT_SESSION_LIFETIME = 86400  # 24 hours

    # Database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        # Try DB_* variables (Docker style)
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'cartflow')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'cartflow')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'cartflow')

        DATABASE_URL = (
            f"postgresql://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', 'false').lower() == 'true'

    # Order pricing policy (single currency, amounts in major units)
    SHIPPING_FLAT_FEE = os.getenv('SHIPPING_FLAT_FEE', '0.00')
    FREE_SHIPPING_MIN_ITEMS = int(os.getenv('FREE_SHIPPING_MIN_ITEMS', '5'))
    TAX_RATE = os.getenv('TAX_RATE', '0')

    # Coupons: when true, a coupon that stopped being valid aborts checkout
    STRICT_COUPONS = os.getenv('STRICT_COUPONS', 'false').lower() == 'true'

    # Payment collaborator. Without a URL the cash-on-delivery gateway is used.
    PAYMENT_GATEWAY_URL = os.getenv('PAYMENT_GATEWAY_URL')
    PAYMENT_GATEWAY_API_KEY = os.getenv('PAYMENT_GATEWAY_API_KEY')
    PAYMENT_TIMEOUT_SECONDS = float(os.getenv('PAYMENT_TIMEOUT_SECONDS', '10'))

    # Inventory reservations
    RESERVATION_RETRY_ATTEMPTS = int(os.getenv('RESERVATION_RETRY_ATTEMPTS', '3'))
    RESERVATION_RETRY_WAIT_SECONDS = float(os.getenv('RESERVATION_RETRY_WAIT_SECONDS', '0.1'))
    RESERVATION_TIMEOUT_SECONDS = int(os.getenv('RESERVATION_TIMEOUT_SECONDS', '900'))  # 15 min

    # Error tracking
    SENTRY_DSN = os.getenv('SENTRY_DSN')


class TestConfig(Config):
    """Configuration used by the test-suite."""

    TESTING = True
    DEBUG = False
    ENV = 'testing'
    SQLALCHEMY_ECHO = False

    SHIPPING_FLAT_FEE = '0.00'
    TAX_RATE = '0'
    STRICT_COUPONS = False
    PAYMENT_GATEWAY_URL = None

    RESERVATION_RETRY_ATTEMPTS = 2
    RESERVATION_RETRY_WAIT_SECONDS = 0.01
