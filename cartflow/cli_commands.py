"""
Flask CLI commands for schema management and maintenance.

Commands:
- flask init-db: Create all tables
- flask sweep-reservations: Release stock held by abandoned checkouts
- flask order-status: Move an order along its fulfilment lifecycle
"""

import click
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from cartflow.database import get_session, create_schema
from cartflow.exceptions import CheckoutError
from cartflow.models import Order
from cartflow.services import order_service, recovery_service
from cartflow.services.payment_gateway import get_payment_gateway


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create database tables that do not exist yet."""
        create_schema()
        click.echo(click.style('Database schema created.', fg='green'))

    @app.cli.command('sweep-reservations')
    @click.option('--older-than', 'older_than', type=int, default=None,
                  help='Age in seconds (defaults to RESERVATION_TIMEOUT_SECONDS)')
    def sweep_reservations(older_than):
        """Fail stale checkout attempts and give their stock back."""
        if older_than is None:
            older_than = current_app.config['RESERVATION_TIMEOUT_SECONDS']

        db_session = get_session()
        try:
            swept = recovery_service.sweep_orphaned_reservations(
                db_session, older_than, gateway=get_payment_gateway()
            )
        except SQLAlchemyError as e:
            db_session.rollback()
            current_app.logger.exception('[RECOVERY] sweep failed')
            raise click.ClickException(f'Sweep failed: {e}')

        click.echo(f'Swept {len(swept)} checkout attempt(s) older than {older_than}s.')

    @app.cli.command('order-status')
    @click.argument('order_number')
    @click.argument('status')
    def order_status(order_number, status):
        """Set ORDER_NUMBER to STATUS (PROCESSING, SHIPPED, DELIVERED, ...)."""
        db_session = get_session()
        order = db_session.query(Order).filter(Order.order_number == order_number).first()
        if not order:
            raise click.ClickException(f'Order {order_number} not found')

        try:
            if status.upper() == 'CANCELLED':
                order_service.cancel_order(db_session, order.id, order.user_id,
                                           reason='Cancelled by operator', gateway=get_payment_gateway())
            else:
                order_service.transition_order(db_session, order, order_service.parse_status(status))
                db_session.commit()
        except CheckoutError as e:
            db_session.rollback()
            raise click.ClickException(e.message)

        click.echo(click.style(f'Order {order_number} is now {status.upper()}.', fg='green'))
