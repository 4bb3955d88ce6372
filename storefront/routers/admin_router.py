import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import config
from ..activity import DEFAULT_LIMIT, get_activity_log
from ..auth import get_current_admin
from ..crud import create_product, delete_product, get_product, update_product
from ..database import get_db
from ..errors import MissingPaymentReferenceError, OrderNotFoundError
from ..inventory import get_products_with_available_stock, get_sold_count
from ..logger import ErrorCode, log_error
from ..models import INT32_MAX, Product
from ..payments.base import ListSessionsParams, PaymentProvider, get_active_payment_provider
from ..reservations import get_reservations_by_session, sweep_stale_reservations
from ..schemas import (
    ActivityOut,
    OrderDetail,
    OrderList,
    OrderSummary,
    ProductOut,
    RefundResponse,
    ReservationOut,
    SweepResponse,
    WebhookSetupResponse,
)
from ..settlement import refund_order
from ..stock import StockLevel, Unlimited, to_api

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])

ORDERS_PAGE_SIZE = 20


def _product_out(product: Product, level: StockLevel, sold: int) -> ProductOut:
    return ProductOut(
        id=product.id,
        sku=product.sku,
        name=product.name,
        description=product.description or "",
        unit_price=product.unit_price,
        stock=product.stock,
        unlimited=isinstance(level, Unlimited),
        available_stock=to_api(level),
        sold=sold,
        active=product.active,
        created=product.created,
    )


def _describe(db: Session, product: Product) -> ProductOut:
    sold = get_sold_count(db, product.id)
    return _product_out(product, product.stock_level.minus(sold), sold)


def _sweep_quietly(db: Session) -> None:
    # Read paths never fail because of the sweep
    try:
        sweep_stale_reservations(db)
    except Exception as e:
        log_error(ErrorCode.RESERVATION_SWEEP, type(e).__name__)


def _require_provider(provider: Optional[PaymentProvider]) -> PaymentProvider:
    if provider is None:
        raise HTTPException(status_code=503, detail="Payment provider not configured")
    return provider


def _product_error(e: ValueError) -> HTTPException:
    if str(e) == "duplicate_product_sku":
        return HTTPException(status_code=409, detail="Product SKU already exists")
    if str(e) == "sku_required":
        return HTTPException(status_code=400, detail="Product SKU is required")
    return HTTPException(status_code=400, detail=str(e))


# -----------------------------
# Products
# -----------------------------


@router.get("/products", response_model=list[ProductOut])
def list_products_admin(
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    _sweep_quietly(db)
    return [
        _product_out(product, level, get_sold_count(db, product.id))
        for product, level in get_products_with_available_stock(db, include_inactive=True)
    ]


@router.post("/products", response_model=ProductOut, status_code=201)
def create_product_admin(
    sku: str = Form(..., min_length=1, max_length=64, description="**SKU** (unique)"),
    name: str = Form(..., min_length=1, max_length=100, description="**Product name**"),
    description: Optional[str] = Form(None, description="**Description** (optional)"),
    unit_price: int = Form(..., ge=0, le=INT32_MAX, description="**Price** in the smallest currency unit"),
    stock: int = Form(..., ge=-1, le=INT32_MAX, description="**Stock** (-1 for unlimited)"),
    active: bool = Form(True),
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    product_data = {
        "sku": sku,
        "name": name,
        "description": description or "",
        "unit_price": unit_price,
        "stock": stock,
        "active": active,
    }
    try:
        product = create_product(db, product_data)
    except ValueError as e:
        raise _product_error(e)
    except IntegrityError:
        # DB-level unique constraint (race conditions)
        db.rollback()
        raise HTTPException(status_code=409, detail="Product SKU already exists")
    logger.info("Product %s created by %s", product.sku, current_admin.get("username"))
    return _describe(db, product)


@router.get("/products/{product_id}", response_model=ProductOut)
def view_product_admin(
    product_id: int,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    _sweep_quietly(db)
    product = get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return _describe(db, product)


@router.patch("/products/{product_id}", response_model=ProductOut)
def update_product_admin(
    product_id: int,
    sku: Optional[str] = Form(None, max_length=64, description="**New SKU** (optional)"),
    name: Optional[str] = Form(None, max_length=100, description="**New name** (optional)"),
    description: Optional[str] = Form(None, description="**New description** (optional)"),
    unit_price: Optional[int] = Form(None, ge=0, le=INT32_MAX, description="**New price** (optional)"),
    stock: Optional[int] = Form(None, ge=-1, le=INT32_MAX, description="**Remaining stock** (optional, -1 for unlimited)"),
    active: Optional[bool] = Form(None),
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    update_data = {
        "sku": sku,
        "name": name,
        "description": description,
        "unit_price": unit_price,
        "stock": stock,
        "active": active,
    }
    update_data = {k: v for k, v in update_data.items() if v is not None}

    try:
        product = update_product(db, product_id, update_data)
    except ValueError as e:
        raise _product_error(e)
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Product SKU already exists")
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return _describe(db, product)


@router.delete("/products/{product_id}", response_model=ProductOut)
def delete_product_admin(
    product_id: int,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    product = get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    snapshot = _describe(db, product)
    delete_product(db, product_id)
    logger.info("Product %s deleted by %s", snapshot.sku, current_admin.get("username"))
    return snapshot


@router.post("/reservations/sweep", response_model=SweepResponse)
def sweep_reservations_admin(
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return SweepResponse(expired=sweep_stale_reservations(db))


@router.get("/activity", response_model=list[ActivityOut])
def list_activity(
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=500),
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return get_activity_log(db, limit=limit)


# -----------------------------
# Orders
# -----------------------------


@router.get("/orders", response_model=OrderList)
def list_orders_admin(
    after: Optional[str] = Query(None, description="Cursor from the previous page"),
    current_admin: Dict = Depends(get_current_admin),
    provider: Optional[PaymentProvider] = Depends(get_active_payment_provider),
):
    provider = _require_provider(provider)
    result = provider.list_sessions(ListSessionsParams(limit=ORDERS_PAGE_SIZE, starting_after=after))
    return OrderList(
        orders=[OrderSummary(**s.__dict__) for s in result.sessions],
        has_more=result.has_more,
        next_cursor=result.next_cursor,
    )


@router.get("/orders/{session_id}", response_model=OrderDetail)
def view_order_admin(
    session_id: str,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    provider: Optional[PaymentProvider] = Depends(get_active_payment_provider),
):
    provider = _require_provider(provider)
    detail = provider.retrieve_session_detail(session_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Order not found")
    fields = dict(detail.__dict__)
    provider_type = fields.pop("provider_type")
    return OrderDetail(
        **fields,
        provider_type=provider_type.value if provider_type else None,
        reservations=[ReservationOut.model_validate(r) for r in get_reservations_by_session(db, session_id)],
    )


@router.post("/orders/{session_id}/refund", response_model=RefundResponse)
def refund_order_admin(
    session_id: str,
    confirm_refund: str = Form(..., description='Type **REFUND** to confirm'),
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    provider: Optional[PaymentProvider] = Depends(get_active_payment_provider),
):
    if confirm_refund.strip() != "REFUND":
        raise HTTPException(status_code=400, detail='Type "REFUND" to confirm')
    provider = _require_provider(provider)

    try:
        outcome = refund_order(db, provider, session_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except MissingPaymentReferenceError:
        raise HTTPException(status_code=400, detail="Order has no payment to refund")
    if not outcome.refunded:
        raise HTTPException(status_code=502, detail="Refund failed")
    logger.info("Order %s refunded by %s", session_id, current_admin.get("username"))
    return RefundResponse(**outcome.__dict__)


@router.post("/webhook/setup", response_model=WebhookSetupResponse)
def setup_webhook_admin(
    webhook_url: Optional[str] = Form(None, description="Defaults to https://ALLOWED_DOMAIN/payment/webhook"),
    existing_endpoint_id: Optional[str] = Form(None),
    current_admin: Dict = Depends(get_current_admin),
    provider: Optional[PaymentProvider] = Depends(get_active_payment_provider),
):
    provider = _require_provider(provider)
    url = webhook_url or f"https://{config.get_allowed_domain()}/payment/webhook"
    result = provider.setup_webhook_endpoint(config.get_stripe_secret_key(), url, existing_endpoint_id)
    return WebhookSetupResponse(**result.__dict__)
