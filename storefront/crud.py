from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .inventory import get_sold_count
from .models import Product, StockReservation
from .stock import UNLIMITED_STOCK


def _normalize_sku(sku: Optional[str]) -> str:
    return (sku or "").strip()


def get_product(db: Session, product_id: int) -> Optional[Product]:
    return db.query(Product).filter(Product.id == product_id).first()


def get_product_by_sku(db: Session, sku: str) -> Optional[Product]:
    normalized = _normalize_sku(sku)
    if not normalized:
        return None
    return db.query(Product).filter(Product.sku == normalized).first()


def get_products_by_skus(db: Session, skus: list[str]) -> list[Product]:
    if not skus:
        return []
    return db.query(Product).filter(Product.sku.in_(set(skus))).all()


def _sku_taken(db: Session, sku: str, exclude_id: Optional[int] = None) -> bool:
    q = db.query(Product).filter(func.lower(Product.sku) == sku.lower())
    if exclude_id is not None:
        q = q.filter(Product.id != exclude_id)
    return q.first() is not None


def create_product(db: Session, product_data: dict) -> Product:
    sku = _normalize_sku(product_data.get("sku"))
    if not sku:
        raise ValueError("sku_required")
    if _sku_taken(db, sku):
        raise ValueError("duplicate_product_sku")

    db_product = Product(**{**product_data, "sku": sku})
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    return db_product


def update_product(db: Session, product_id: int, update_data: dict) -> Optional[Product]:
    """Apply an admin edit.

    `stock` in update_data is the *remaining* stock the admin wants to offer.
    Units already held by pending/confirmed reservations are added back so
    the stored stock keeps covering them. -1 (unlimited) is stored as is.
    """
    db_product = get_product(db, product_id)
    if not db_product:
        return None

    if update_data.get("sku") is not None:
        new_sku = _normalize_sku(update_data["sku"])
        if not new_sku:
            raise ValueError("sku_required")
        if _sku_taken(db, new_sku, exclude_id=product_id):
            raise ValueError("duplicate_product_sku")
        update_data["sku"] = new_sku

    if update_data.get("stock") is not None and update_data["stock"] != UNLIMITED_STOCK:
        update_data["stock"] = int(update_data["stock"]) + get_sold_count(db, product_id)

    for key, value in update_data.items():
        if value is not None:
            setattr(db_product, key, value)
    db.commit()
    db.refresh(db_product)
    return db_product


def delete_product(db: Session, product_id: int) -> Optional[Product]:
    db_product = get_product(db, product_id)
    if db_product:
        # reservations reference the product
        db.query(StockReservation).filter(StockReservation.product_id == product_id).delete(
            synchronize_session=False
        )
        db.delete(db_product)
        db.commit()
    return db_product
