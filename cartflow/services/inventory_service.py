"""
Inventory ledger.

reserve() is a single conditional decrement at the storage layer:

    UPDATE inventory_item SET available_qty = available_qty - :q
    WHERE variant_id = :id AND available_qty >= :q

so concurrent callers can never drive stock below zero. A successful
reserve is a real decrement; callers that do not go on to commit must
release() it.
"""
import logging
from typing import Iterable, List, Tuple

from sqlalchemy.orm import Session

from cartflow.models import InventoryItem, StockReservation, ReservationStatus
from cartflow.exceptions import InsufficientStockError
from cartflow.utils.clock import utcnow

logger = logging.getLogger(__name__)


def get_available(session: Session, variant_id: int) -> int:
    """Available quantity straight from the database (0 when untracked)."""
    qty = session.query(InventoryItem.available_qty).filter(
        InventoryItem.variant_id == variant_id
    ).scalar()
    return qty or 0


def reserve(session: Session, variant_id: int, quantity: int) -> None:
    """
    Atomically decrement available stock by quantity.

    Raises:
        InsufficientStockError: when less than quantity is available.
    """
    if quantity <= 0:
        raise ValueError('quantity must be positive')

    updated = session.query(InventoryItem).filter(
        InventoryItem.variant_id == variant_id,
        InventoryItem.available_qty >= quantity,
    ).update(
        {
            InventoryItem.available_qty: InventoryItem.available_qty - quantity,
            InventoryItem.updated_at: utcnow(),
        },
        synchronize_session=False,
    )

    if updated != 1:
        available = get_available(session, variant_id)
        logger.info(f"[INVENTORY] reserve refused variant={variant_id} requested={quantity} available={available}")
        raise InsufficientStockError(variant_id, quantity, available)

    logger.debug(f"[INVENTORY] reserved variant={variant_id} qty={quantity}")


def release(session: Session, variant_id: int, quantity: int) -> None:
    """Return quantity to available stock."""
    if quantity <= 0:
        raise ValueError('quantity must be positive')

    updated = session.query(InventoryItem).filter(
        InventoryItem.variant_id == variant_id,
    ).update(
        {
            InventoryItem.available_qty: InventoryItem.available_qty + quantity,
            InventoryItem.updated_at: utcnow(),
        },
        synchronize_session=False,
    )

    if updated != 1:
        # Stock row vanished; nothing to give the quantity back to
        logger.error(f"[INVENTORY] release found no stock row for variant={variant_id} qty={quantity}")
        return

    logger.debug(f"[INVENTORY] released variant={variant_id} qty={quantity}")


def reserve_all(session: Session, lines: Iterable[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """
    Reserve every (variant_id, quantity) pair or none of them.

    Lines are reserved in variant id order so that concurrent group
    reservations take row locks in the same order. On the first refusal
    the lines already reserved are released and the error is re-raised.
    """
    reserved = []
    try:
        for variant_id, quantity in sorted(lines):
            reserve(session, variant_id, quantity)
            reserved.append((variant_id, quantity))
    except InsufficientStockError:
        release_all(session, reserved)
        raise
    return reserved


def release_all(session: Session, lines: Iterable[Tuple[int, int]]) -> None:
    """Restore stock for every line, in variant id order like reserve_all."""
    for variant_id, quantity in sorted(lines):
        release(session, variant_id, quantity)


# Reservation log ------------------------------------------------------------

def hold_reservations(session: Session, attempt_id: int, lines: Iterable[Tuple[int, int]]) -> None:
    """Record decrements made on behalf of a checkout attempt."""
    for variant_id, quantity in lines:
        session.add(StockReservation(
            attempt_id=attempt_id,
            variant_id=variant_id,
            quantity=quantity,
            status=ReservationStatus.HELD,
        ))
    session.flush()


def release_reservations(session: Session, attempt_id: int) -> List[Tuple[int, int]]:
    """
    Give back every HELD reservation of an attempt.

    Each row is flipped HELD -> RELEASED with a conditional update before
    its stock is restored, so a checkout compensating and the recovery
    sweep can never release the same reservation twice.
    """
    held = session.query(StockReservation.id, StockReservation.variant_id, StockReservation.quantity).filter(
        StockReservation.attempt_id == attempt_id,
        StockReservation.status == ReservationStatus.HELD,
    ).order_by(StockReservation.variant_id).all()

    released = []
    for reservation_id, variant_id, quantity in held:
        flipped = session.query(StockReservation).filter(
            StockReservation.id == reservation_id,
            StockReservation.status == ReservationStatus.HELD,
        ).update(
            {StockReservation.status: ReservationStatus.RELEASED, StockReservation.updated_at: utcnow()},
            synchronize_session=False,
        )
        if flipped == 1:
            release(session, variant_id, quantity)
            released.append((variant_id, quantity))

    if released:
        logger.warning(f"[INVENTORY] released {len(released)} reservation(s) of attempt {attempt_id}")
    return released


def consume_reservations(session: Session, attempt_id: int) -> int:
    """Mark an attempt's HELD reservations as part of a committed order."""
    return session.query(StockReservation).filter(
        StockReservation.attempt_id == attempt_id,
        StockReservation.status == ReservationStatus.HELD,
    ).update(
        {StockReservation.status: ReservationStatus.CONSUMED, StockReservation.updated_at: utcnow()},
        synchronize_session=False,
    )
