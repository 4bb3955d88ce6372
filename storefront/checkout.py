"""Checkout orchestration: cart -> reservations -> provider session."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Sequence

from sqlalchemy.orm import Session

from . import config, crud
from .errors import InsufficientStockError, PaymentProviderError, ProductNotFoundError
from .logger import ErrorCode, log_error
from .payments.base import CreateCheckoutParams, LineItem, PaymentProvider
from .reservations import ReservationItem, expire_reservations, rebind_session, reserve_batch

logger = logging.getLogger(__name__)


@dataclass
class CartItem:
    sku: str
    quantity: int


def create_checkout(
    db: Session,
    provider: PaymentProvider,
    items: Sequence[CartItem],
    success_url: str,
    cancel_url: str,
) -> str:
    """Reserve the cart and open a provider checkout; returns the checkout URL.

    Names and prices come from the catalog, never from the request. No
    provider call happens while a reservation transaction is open: if the
    provider fails, the reservations made for the cart are expired again.
    """
    products = {p.sku: p for p in crud.get_products_by_skus(db, [i.sku for i in items])}

    reservation_items = []
    line_items = []
    for item in items:
        product = products.get(item.sku)
        if product is None or not product.active:
            raise ProductNotFoundError(item.sku)
        reservation_items.append(ReservationItem(product.id, product.sku, item.quantity))
        line_items.append(LineItem(name=product.name, unit_price=product.unit_price, quantity=item.quantity))

    temp_session_id = str(uuid.uuid4())
    result = reserve_batch(db, reservation_items, temp_session_id)
    if not result.ok:
        requested = next(i.quantity for i in items if i.sku == result.failed_sku)
        raise InsufficientStockError(result.failed_sku, requested)

    session = provider.create_checkout_session(
        CreateCheckoutParams(
            line_items=line_items,
            metadata={"reservation_ids": ",".join(str(r) for r in result.reservation_ids)},
            success_url=success_url,
            cancel_url=cancel_url,
            currency=config.get_currency_code().lower(),
        )
    )
    if session is None:
        expire_reservations(db, temp_session_id)
        log_error(ErrorCode.PAYMENT_CHECKOUT, f"provider={provider.type.value}")
        raise PaymentProviderError("Failed to create checkout session")

    rebind_session(db, temp_session_id, session.session_id)
    logger.info(
        "Checkout session %s created with %s reservations",
        session.session_id,
        len(result.reservation_ids),
    )
    return session.checkout_url
