"""
Recovery sweep for checkouts that died between reservation and commit.

Run periodically (flask sweep-reservations). Attempts still in flight
after the reservation timeout are failed with RESERVATION_EXPIRED, their
HELD stock is given back and any recorded authorization is voided.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, List

from cartflow.models import CheckoutAttempt, CheckoutState, AuditAction
from cartflow.exceptions import ReasonCode
from cartflow.services import audit_service, inventory_service
from cartflow.services.checkout_service import IN_FLIGHT_STATES
from cartflow.services.payment_gateway import void_payment
from cartflow.utils.clock import utcnow
from cartflow.utils.metrics import reservations_swept_total

logger = logging.getLogger(__name__)


def find_stale_attempts(session, older_than_seconds: int, now: Optional[datetime] = None):
    """(id, payment_reference) of in-flight attempts untouched since the cutoff."""
    cutoff = (now or utcnow()) - timedelta(seconds=older_than_seconds)
    return session.query(CheckoutAttempt.id, CheckoutAttempt.payment_reference).filter(
        CheckoutAttempt.state.in_(IN_FLIGHT_STATES),
        CheckoutAttempt.updated_at < cutoff,
    ).order_by(CheckoutAttempt.id).all()


def sweep_orphaned_reservations(
    session,
    older_than_seconds: int,
    gateway=None,
    now: Optional[datetime] = None
) -> List[int]:
    """
    Fail stale attempts and release their reservations.

    Each attempt is handled in its own transaction. The state flip is
    conditional, so an attempt that commits concurrently is left alone.

    Returns:
        Ids of the attempts that were swept.
    """
    stale = find_stale_attempts(session, older_than_seconds, now)
    session.rollback()

    swept = []
    for attempt_id, payment_reference in stale:
        failed = session.query(CheckoutAttempt).filter(
            CheckoutAttempt.id == attempt_id,
            CheckoutAttempt.state.in_(IN_FLIGHT_STATES),
        ).update(
            {
                CheckoutAttempt.state: CheckoutState.FAILED,
                CheckoutAttempt.reason: ReasonCode.RESERVATION_EXPIRED.value,
                CheckoutAttempt.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
        if failed != 1:
            session.rollback()
            continue

        released = inventory_service.release_reservations(session, attempt_id)
        audit_service.log_action(
            session,
            AuditAction.RESERVATION_SWEPT,
            resource_type='checkout_attempt',
            resource_id=attempt_id,
            details={'released': released, 'payment_reference': payment_reference},
        )
        session.commit()

        reservations_swept_total.inc(len(released))
        logger.warning(f"[RECOVERY] attempt={attempt_id} expired, released {len(released)} reservation(s)")

        if payment_reference and gateway is not None:
            void_payment(gateway, payment_reference)
        swept.append(attempt_id)

    if swept:
        logger.info(f"[RECOVERY] swept {len(swept)} attempt(s)")
    return swept
