"""Settlement: applies verified provider outcomes to reservations."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .activity import add_activity, log_activity
from .errors import MissingPaymentReferenceError, OrderNotFoundError
from .messaging import notify
from .models import ProcessedPayment, StockReservation
from .payments.base import PaymentProvider, SettlementKind, WebhookEvent
from .reservations import (
    CONFIRMED,
    PENDING,
    expire_reservations,
    get_reservations_by_session,
    restock_from_refund,
)

logger = logging.getLogger(__name__)


@dataclass
class RefundOutcome:
    session_id: str
    refunded: bool
    restocked: int = 0


def _claim_and_confirm(db: Session, session_id: str) -> bool:
    """Record the session as processed and confirm its pending reservations.

    Both writes commit together. False when the session was already claimed.
    """
    if db.get(ProcessedPayment, session_id) is not None:
        db.rollback()
        return False
    try:
        db.add(ProcessedPayment(payment_session_id=session_id))
        db.flush()
    except IntegrityError:
        db.rollback()
        return False

    try:
        confirmed = (
            db.query(StockReservation)
            .filter(
                StockReservation.provider_session_id == session_id,
                StockReservation.status == PENDING,
            )
            .update({StockReservation.status: CONFIRMED}, synchronize_session=False)
        )
        add_activity(db, f"Order completed: {session_id}")
        db.commit()
    except Exception:
        db.rollback()
        raise
    if not confirmed:
        logger.warning(
            "Session %s completed but held no pending reservations",
            session_id,
        )
    else:
        logger.info("Confirmed %s reservations for session %s", confirmed, session_id)
    return True


def _items_payload(db: Session, session_id: str) -> list[dict]:
    return [
        {"product_id": r.product_id, "quantity": r.quantity}
        for r in get_reservations_by_session(db, session_id)
    ]


def reconcile_webhook_event(db: Session, provider: PaymentProvider, event: WebhookEvent) -> dict:
    """Apply a verified webhook event; returns the response body.

    Every branch is safe to replay. Events that are not settlements, or that
    cannot be tied to a session, are acknowledged without effect.
    """
    settlement = provider.interpret_event(event)
    if settlement is None or not settlement.session_id:
        return {"received": True}

    session_id = settlement.session_id
    if settlement.kind == SettlementKind.COMPLETED:
        if not _claim_and_confirm(db, session_id):
            logger.info("Session %s already processed", session_id)
            return {"received": True, "already_processed": True}
        notify(
            "order.completed",
            {
                "session_id": session_id,
                "provider": provider.type.value,
                "items": _items_payload(db, session_id),
            },
        )
    elif settlement.kind == SettlementKind.EXPIRED:
        count = expire_reservations(db, session_id)
        logger.info("Expired %s reservations for session %s", count, session_id)
    elif settlement.kind == SettlementKind.REFUNDED:
        count = restock_from_refund(db, session_id)
        logger.info("Restocked %s reservations for refunded session %s", count, session_id)
    return {"received": True}


def refund_order(db: Session, provider: PaymentProvider, session_id: str) -> RefundOutcome:
    """Refund an order in full and, only if the provider accepts, restock it."""
    detail = provider.retrieve_session_detail(session_id)
    if detail is None:
        raise OrderNotFoundError(session_id)
    if not detail.payment_reference:
        raise MissingPaymentReferenceError(session_id)

    if not provider.refund_payment(detail.payment_reference):
        return RefundOutcome(session_id=session_id, refunded=False)

    restocked = restock_from_refund(db, session_id)
    log_activity(db, f"Order refunded: {session_id}")
    logger.info("Refunded session %s, restocked %s reservations", session_id, restocked)
    notify(
        "order.refunded",
        {
            "session_id": session_id,
            "provider": provider.type.value,
            "items": _items_payload(db, session_id),
        },
    )
    return RefundOutcome(session_id=session_id, refunded=True, restocked=restocked)
