"""Stock reservation engine.

Lifecycle of a reservation:

    pending   -> confirmed   checkout completed
    pending   -> expired     stale sweep, cancelled/expired checkout, provider failure
    confirmed -> expired     refund (stock goes back to the pool)

expired is terminal. Reserve operations check availability and insert inside
one transaction with the product row locked, so concurrent checkouts against
the same product serialize. Session-keyed transitions are single UPDATEs
guarded by the current status, which makes them safe to replay.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import NamedTuple, Optional, Sequence

from sqlalchemy.orm import Session

from .inventory import reserved_quantity
from .models import INT32_MAX, Product, ReservationStatus, StockReservation, utcnow
from .stock import Finite

logger = logging.getLogger(__name__)

STALE_RESERVATION_WINDOW = dt.timedelta(minutes=30)
MAX_QUANTITY = INT32_MAX

PENDING = ReservationStatus.PENDING.value
CONFIRMED = ReservationStatus.CONFIRMED.value
EXPIRED = ReservationStatus.EXPIRED.value


class ReservationItem(NamedTuple):
    product_id: int
    sku: str
    quantity: int


@dataclass
class BatchReservationResult:
    ok: bool
    reservation_ids: list[int] = field(default_factory=list)
    failed_sku: Optional[str] = None


def _check_quantity(quantity: int) -> None:
    if not 0 < quantity <= MAX_QUANTITY:
        raise ValueError(f"quantity must be between 1 and {MAX_QUANTITY}")


def _lock_products(db: Session, product_ids: Sequence[int]) -> dict[int, Product]:
    # Stable lock order avoids deadlocks between carts listing the same products
    locked: dict[int, Product] = {}
    for pid in sorted(set(product_ids)):
        product = (
            db.query(Product)
            .filter(Product.id == pid, Product.active.is_(True))
            .with_for_update()
            .first()
        )
        if product is not None:
            locked[pid] = product
    return locked


def _check_and_insert(
    db: Session,
    product: Optional[Product],
    quantity: int,
    session_id: str,
    now: dt.datetime,
) -> Optional[int]:
    if product is None:
        return None

    level = product.stock_level
    if isinstance(level, Finite):
        available = level.quantity - reserved_quantity(db, product.id)
        if available < quantity:
            return None

    reservation = StockReservation(
        product_id=product.id,
        quantity=quantity,
        provider_session_id=session_id,
        status=PENDING,
        created=now,
    )
    db.add(reservation)
    db.flush()
    return reservation.id


def _expire_stale(db: Session, cutoff: dt.datetime) -> int:
    return (
        db.query(StockReservation)
        .filter(StockReservation.status == PENDING, StockReservation.created <= cutoff)
        .update({StockReservation.status: EXPIRED}, synchronize_session=False)
    )


def _transition(db: Session, session_id: str, from_status: str, to_status: str) -> int:
    try:
        count = (
            db.query(StockReservation)
            .filter(
                StockReservation.provider_session_id == session_id,
                StockReservation.status == from_status,
            )
            .update({StockReservation.status: to_status}, synchronize_session=False)
        )
        db.commit()
        return int(count or 0)
    except Exception:
        db.rollback()
        raise


def reserve_stock(
    db: Session,
    product_id: int,
    quantity: int,
    session_id: str,
    *,
    now: Optional[dt.datetime] = None,
) -> Optional[int]:
    """Reserve `quantity` units of an active product.

    Returns the new reservation id, or None when there is not enough
    available stock (or the product is unknown/inactive). Nothing is written
    in the None case.
    """
    _check_quantity(quantity)

    now = now or utcnow()
    try:
        product = _lock_products(db, [product_id]).get(product_id)
        reservation_id = _check_and_insert(db, product, quantity, session_id, now)
        if reservation_id is None:
            db.rollback()
            return None
        db.commit()
        return reservation_id
    except Exception:
        db.rollback()
        raise


def reserve_batch(
    db: Session,
    items: Sequence[ReservationItem],
    session_id: str,
    *,
    now: Optional[dt.datetime] = None,
    stale_after: dt.timedelta = STALE_RESERVATION_WINDOW,
) -> BatchReservationResult:
    """Reserve every item of a cart or none of them.

    Abandoned pending reservations are swept inside the same transaction
    before any availability is evaluated. Items are evaluated in the order
    given; the first one that does not fit stops the batch, everything this
    batch inserted for `session_id` is expired and that item's SKU is
    reported.
    """
    for item in items:
        _check_quantity(item.quantity)

    now = now or utcnow()
    try:
        swept = _expire_stale(db, now - stale_after)
        if swept:
            logger.info("Expired %s stale reservations before batch reserve", swept)

        products = _lock_products(db, [i.product_id for i in items])

        reservation_ids: list[int] = []
        for item in items:
            reservation_id = _check_and_insert(
                db, products.get(item.product_id), item.quantity, session_id, now
            )
            if reservation_id is None:
                (
                    db.query(StockReservation)
                    .filter(
                        StockReservation.provider_session_id == session_id,
                        StockReservation.status == PENDING,
                    )
                    .update({StockReservation.status: EXPIRED}, synchronize_session=False)
                )
                db.commit()
                return BatchReservationResult(ok=False, failed_sku=item.sku)
            reservation_ids.append(reservation_id)

        db.commit()
        return BatchReservationResult(ok=True, reservation_ids=reservation_ids)
    except Exception:
        db.rollback()
        raise


def confirm_reservations(db: Session, session_id: str) -> int:
    """pending -> confirmed for a session. A replay affects zero rows."""
    return _transition(db, session_id, PENDING, CONFIRMED)


def expire_reservations(db: Session, session_id: str) -> int:
    """pending -> expired for a cancelled, expired or failed checkout."""
    return _transition(db, session_id, PENDING, EXPIRED)


def restock_from_refund(db: Session, session_id: str) -> int:
    """confirmed -> expired, returning the units to the available pool."""
    return _transition(db, session_id, CONFIRMED, EXPIRED)


def sweep_stale_reservations(
    db: Session,
    max_age: dt.timedelta = STALE_RESERVATION_WINDOW,
    *,
    now: Optional[dt.datetime] = None,
) -> int:
    """Expire pending reservations created at least `max_age` ago, any session."""
    now = now or utcnow()
    try:
        count = _expire_stale(db, now - max_age)
        db.commit()
        return int(count or 0)
    except Exception:
        db.rollback()
        raise


def rebind_session(db: Session, old_session_id: str, new_session_id: str) -> int:
    """Move reservations from the temporary checkout token to the provider's id."""
    try:
        count = (
            db.query(StockReservation)
            .filter(StockReservation.provider_session_id == old_session_id)
            .update(
                {StockReservation.provider_session_id: new_session_id},
                synchronize_session=False,
            )
        )
        db.commit()
        return int(count or 0)
    except Exception:
        db.rollback()
        raise


def get_reservations_by_session(db: Session, session_id: str) -> list[StockReservation]:
    return (
        db.query(StockReservation)
        .filter(StockReservation.provider_session_id == session_id)
        .order_by(StockReservation.id)
        .all()
    )
