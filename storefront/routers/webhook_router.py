from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..payments.base import PaymentProvider, get_active_payment_provider
from ..settlement import reconcile_webhook_event

router = APIRouter(prefix="/payment", tags=["Payment Webhooks"])


async def _raw_payload(request: Request) -> str:
    return (await request.body()).decode("utf-8", errors="replace")


@router.post("/webhook", include_in_schema=False)
def payment_webhook(
    request: Request,
    payload: str = Depends(_raw_payload),
    db: Session = Depends(get_db),
    provider: Optional[PaymentProvider] = Depends(get_active_payment_provider),
):
    """Provider webhook endpoint.

    The signature is checked against the raw body before anything is read
    from the event or written to the database.
    """
    if provider is None:
        raise HTTPException(status_code=503, detail="Payment provider not configured")

    signature = request.headers.get(provider.signature_header)
    if not signature:
        raise HTTPException(status_code=400, detail="Missing signature")

    verification = provider.verify_webhook_signature(payload, signature)
    if not verification.valid or verification.event is None:
        raise HTTPException(status_code=400, detail=verification.error or "Invalid webhook")

    return reconcile_webhook_event(db, provider, verification.event)
