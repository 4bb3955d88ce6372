"""Inventory ledger: available stock computed from products and reservations.

available = stock - sum(quantity of pending + confirmed reservations), never
below zero. Unlimited products stay unlimited regardless of reservations.
"""
from __future__ import annotations

from typing import Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import ACTIVE_STATUSES, Product, StockReservation
from .stock import Finite, StockLevel


def reserved_quantity(db: Session, product_id: int) -> int:
    q = db.query(func.coalesce(func.sum(StockReservation.quantity), 0)).filter(
        StockReservation.product_id == product_id,
        StockReservation.status.in_(ACTIVE_STATUSES),
    )
    return int(q.scalar() or 0)


def get_available_stock(db: Session, product_id: int) -> StockLevel:
    """Available stock for one product; Finite(0) if it is unknown or inactive."""
    product = (
        db.query(Product)
        .filter(Product.id == product_id, Product.active.is_(True))
        .first()
    )
    if not product:
        return Finite(0)
    level = product.stock_level
    if isinstance(level, Finite):
        return level.minus(reserved_quantity(db, product_id))
    return level


def _with_reserved(db: Session):
    reserved = (
        db.query(
            StockReservation.product_id.label("product_id"),
            func.sum(StockReservation.quantity).label("reserved"),
        )
        .filter(StockReservation.status.in_(ACTIVE_STATUSES))
        .group_by(StockReservation.product_id)
        .subquery()
    )
    return (
        db.query(Product, func.coalesce(reserved.c.reserved, 0))
        .outerjoin(reserved, reserved.c.product_id == Product.id)
    )


def get_available_stock_for(db: Session, product_ids: Iterable[int]) -> dict[int, StockLevel]:
    """Available stock for many products in one query.

    Ids that are unknown or inactive map to Finite(0).
    """
    ids = list(set(product_ids))
    if not ids:
        return {}
    rows = (
        _with_reserved(db)
        .filter(Product.id.in_(ids), Product.active.is_(True))
        .all()
    )
    levels: dict[int, StockLevel] = {pid: Finite(0) for pid in ids}
    for product, reserved in rows:
        levels[product.id] = product.stock_level.minus(int(reserved))
    return levels


def get_products_with_available_stock(
    db: Session, *, include_inactive: bool = False
) -> list[tuple[Product, StockLevel]]:
    """Products paired with their available stock.

    The public catalog gets active products ordered by name; the admin listing
    (include_inactive=True) gets every product, newest first.
    """
    q = _with_reserved(db)
    if include_inactive:
        q = q.order_by(Product.created.desc(), Product.id.desc())
    else:
        q = q.filter(Product.active.is_(True)).order_by(Product.name)
    return [(product, product.stock_level.minus(int(reserved))) for product, reserved in q.all()]


def get_sold_count(db: Session, product_id: int) -> int:
    """Units currently held by pending or confirmed reservations."""
    return reserved_quantity(db, product_id)
