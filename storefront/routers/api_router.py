import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from .. import config
from ..checkout import CartItem, create_checkout
from ..database import get_db
from ..errors import InsufficientStockError, PaymentProviderError, ProductNotFoundError
from ..inventory import get_products_with_available_stock
from ..payments.base import PaymentProvider, get_active_payment_provider
from ..rate_limiter import checkout_limiter
from ..schemas import ApiProduct, CheckoutRequest, CheckoutResponse
from ..stock import to_api

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Storefront API"])


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def format_price(unit_price: int) -> str:
    return f"{unit_price / 100:.2f}"


@router.get("/products", response_model=list[ApiProduct], response_model_exclude_none=True)
def list_products(db: Session = Depends(get_db)):
    currency = config.get_currency_code()
    products = []
    for product, level in get_products_with_available_stock(db):
        stock = to_api(level)
        products.append(
            ApiProduct(
                sku=product.sku,
                name=product.name,
                description=product.description or "",
                unit_price=product.unit_price,
                price_formatted=format_price(product.unit_price),
                currency=currency,
                stock=stock,
                in_stock=stock is None or stock > 0,
            )
        )
    return products


async def _raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/checkout", response_model=CheckoutResponse)
def checkout(
    request: Request,
    raw_body: bytes = Depends(_raw_body),
    db: Session = Depends(get_db),
    provider: Optional[PaymentProvider] = Depends(get_active_payment_provider),
):
    if provider is None:
        return _error(503, "Payments not configured")

    ip = request.client.host if request.client else "unknown"
    if checkout_limiter.is_rate_limited(db, ip):
        return _error(429, "Too many checkout attempts, try again later")
    checkout_limiter.record_attempt(db, ip)

    try:
        body = json.loads(raw_body)
    except ValueError:
        return _error(400, "Invalid JSON")

    try:
        data = CheckoutRequest.model_validate(body)
    except ValidationError as e:
        if any(err["loc"] and err["loc"][0] == "items" for err in e.errors()):
            return _error(400, "Invalid items array")
        if not isinstance(body, dict):
            return _error(400, "Invalid items array")
        return _error(400, "Missing success_url or cancel_url")

    items = [CartItem(sku=i.sku, quantity=i.quantity) for i in data.items]
    try:
        url = create_checkout(db, provider, items, data.success_url, data.cancel_url)
    except ProductNotFoundError as e:
        return _error(400, str(e))
    except InsufficientStockError as e:
        return _error(409, "Insufficient stock", details=[{"sku": e.sku, "requested": e.requested}])
    except PaymentProviderError:
        return _error(502, "Failed to create checkout session")
    return CheckoutResponse(url=url)
