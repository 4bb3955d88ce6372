"""Square payment-link adapter.

Square has no checkout session object: a payment link creates an order and
the order id plays the session id's role everywhere else in the system.
Webhook subscriptions are created by hand in the Square dashboard.
"""
from __future__ import annotations

import json
import uuid
from typing import Any, Optional

from square import Square
from square.environment import SquareEnvironment

from .. import config
from ..logger import ErrorCode, log_debug, log_error
from .base import (
    CheckoutSessionResult,
    CreateCheckoutParams,
    ListSessionsParams,
    PaymentProvider,
    PaymentProviderType,
    PaymentSession,
    PaymentSessionDetail,
    PaymentSessionListResult,
    SettlementEvent,
    SettlementKind,
    WebhookEvent,
    WebhookSetupResult,
    WebhookVerifyResult,
)
from .helpers import (
    ClientCache,
    compute_hmac_sha256,
    get_field,
    hmac_to_base64,
    safe_call,
    secure_compare,
    to_session_list_result,
)


def _build_client(access_token: str) -> Square:
    environment = (
        SquareEnvironment.PRODUCTION
        if config.get_square_environment() == "production"
        else SquareEnvironment.SANDBOX
    )
    return Square(token=access_token, environment=environment)


_client_cache: ClientCache[Square] = ClientCache("Square", _build_client)


def reset_client() -> None:
    _client_cache.reset()


def notification_url() -> str:
    return f"https://{config.get_allowed_domain()}/payment/webhook"


def dashboard_url(order_id: str) -> str:
    return f"https://squareup.com/dashboard/orders/overview/{order_id}"


def _to_payment_session(order: Any) -> PaymentSession:
    money = get_field(order, "total_money")
    currency = get_field(money, "currency")
    return PaymentSession(
        id=get_field(order, "id", ""),
        status=get_field(order, "state") or "UNKNOWN",
        amount=get_field(money, "amount"),
        currency=str(currency).lower() if currency else None,
        created=get_field(order, "created_at") or "",
    )


class SquarePaymentProvider(PaymentProvider):
    type = PaymentProviderType.SQUARE
    signature_header = "x-square-hmacsha256-signature"
    checkout_completed_event_type = "payment.updated"
    checkout_expired_event_type = "order.updated"
    refund_event_type = "refund.updated"

    def _get_client(self) -> Optional[Square]:
        return _client_cache.get(config.get_square_access_token())

    def _location_id(self) -> Optional[str]:
        location_id = config.get_square_location_id()
        if not location_id:
            log_debug("Square", "No location ID configured")
            return None
        return location_id

    def create_checkout_session(self, params: CreateCheckoutParams) -> Optional[CheckoutSessionResult]:
        client = self._get_client()
        location_id = self._location_id()
        if client is None or location_id is None:
            return None

        currency = params.currency.upper()

        def _create():
            response = client.checkout.payment_links.create(
                idempotency_key=str(uuid.uuid4()),
                order={
                    "location_id": location_id,
                    "line_items": [
                        {
                            "name": item.name,
                            "quantity": str(item.quantity),
                            "base_price_money": {"amount": item.unit_price, "currency": currency},
                        }
                        for item in params.line_items
                    ],
                    "metadata": params.metadata,
                },
                checkout_options={"redirect_url": params.success_url},
            )
            link = get_field(response, "payment_link")
            url = get_field(link, "url")
            order_id = get_field(link, "order_id")
            if not url or not order_id:
                return None
            return CheckoutSessionResult(session_id=order_id, checkout_url=url)

        return safe_call(_create, ErrorCode.SQUARE_CHECKOUT)

    def _retrieve_order(self, order_id: str) -> Any:
        client = self._get_client()
        if client is None:
            return None
        response = safe_call(lambda: client.orders.get(order_id=order_id), ErrorCode.SQUARE_ORDER)
        return get_field(response, "order")

    def _retrieve_payment(self, payment_id: str) -> Any:
        client = self._get_client()
        if client is None:
            return None
        response = safe_call(lambda: client.payments.get(payment_id=payment_id), ErrorCode.SQUARE_SESSION)
        return get_field(response, "payment")

    def retrieve_session(self, session_id: str) -> Optional[PaymentSession]:
        order = self._retrieve_order(session_id)
        return _to_payment_session(order) if order else None

    def retrieve_session_detail(self, session_id: str) -> Optional[PaymentSessionDetail]:
        order = self._retrieve_order(session_id)
        if not order:
            return None

        tenders = get_field(order, "tenders") or []
        line_items = [
            {
                "name": get_field(li, "name") or "",
                "quantity": int(get_field(li, "quantity") or 0),
                "amount_total": get_field(get_field(li, "total_money"), "amount"),
            }
            for li in get_field(order, "line_items") or []
        ]
        metadata = {k: v for k, v in (get_field(order, "metadata") or {}).items() if isinstance(v, str)}
        return PaymentSessionDetail(
            **_to_payment_session(order).__dict__,
            line_items=line_items,
            metadata=metadata,
            payment_reference=get_field(tenders[0], "payment_id") if tenders else None,
            dashboard_url=dashboard_url(get_field(order, "id") or session_id),
            provider_type=self.type,
        )

    def list_sessions(self, params: ListSessionsParams) -> PaymentSessionListResult:
        client = self._get_client()
        location_id = self._location_id()
        if client is None or location_id is None:
            return PaymentSessionListResult(sessions=[], has_more=False)

        search: dict[str, Any] = {
            "location_ids": [location_id],
            "limit": params.limit,
            "query": {"sort": {"sort_field": "CREATED_AT", "sort_order": "DESC"}},
        }
        if params.starting_after:
            search["cursor"] = params.starting_after
        response = safe_call(lambda: client.orders.search(**search), ErrorCode.SQUARE_ORDER)
        if response is None:
            return PaymentSessionListResult(sessions=[], has_more=False)
        cursor = get_field(response, "cursor")
        return to_session_list_result(
            get_field(response, "orders") or [], bool(cursor), _to_payment_session, next_cursor=cursor
        )

    def verify_webhook_signature(self, payload: str, signature: str) -> WebhookVerifyResult:
        secret = config.get_square_webhook_signature_key()
        if not secret:
            log_error(ErrorCode.CONFIG_MISSING, "Square webhook signature key")
            return WebhookVerifyResult(valid=False, error="Webhook signature key not configured")
        if not signature:
            return WebhookVerifyResult(valid=False, error="Missing signature")

        expected = hmac_to_base64(compute_hmac_sha256(notification_url() + payload, secret))
        if not secure_compare(signature, expected):
            log_error(ErrorCode.SQUARE_SIGNATURE, "mismatch")
            return WebhookVerifyResult(valid=False, error="Signature verification failed")

        try:
            raw = json.loads(payload)
            if isinstance(raw, dict) and not raw.get("id") and raw.get("event_id"):
                raw["id"] = raw["event_id"]
            event = WebhookEvent.model_validate(raw)
        except ValueError:
            log_error(ErrorCode.SQUARE_SIGNATURE, "invalid JSON")
            return WebhookVerifyResult(valid=False, error="Invalid JSON payload")
        return WebhookVerifyResult(valid=True, event=event)

    def refund_payment(self, payment_reference: str) -> bool:
        payment = self._retrieve_payment(payment_reference)
        money = get_field(payment, "amount_money")
        amount = get_field(money, "amount")
        currency = get_field(money, "currency")
        if not amount or not currency:
            log_error(
                ErrorCode.SQUARE_REFUND,
                f"Cannot refund payment {payment_reference}: missing amount info",
            )
            return False

        client = self._get_client()
        if client is None:
            return False
        response = safe_call(
            lambda: client.refunds.refund_payment(
                idempotency_key=str(uuid.uuid4()),
                payment_id=payment_reference,
                amount_money={"amount": amount, "currency": currency},
            ),
            ErrorCode.SQUARE_REFUND,
        )
        return response is not None

    def setup_webhook_endpoint(
        self,
        secret_key: str,
        webhook_url: str,
        existing_endpoint_id: Optional[str] = None,
    ) -> WebhookSetupResult:
        return WebhookSetupResult(
            success=False,
            error="Square webhooks must be configured manually in the Square Developer Dashboard",
        )

    def interpret_event(self, event: WebhookEvent) -> Optional[SettlementEvent]:
        obj = event.data.object
        if event.type == self.checkout_completed_event_type:
            payment = obj.get("payment") or obj
            if payment.get("status") != "COMPLETED":
                return None
            return SettlementEvent(SettlementKind.COMPLETED, payment.get("order_id"))
        if event.type == self.checkout_expired_event_type:
            order = obj.get("order_updated") or obj
            if order.get("state") != "CANCELED":
                return None
            return SettlementEvent(SettlementKind.EXPIRED, order.get("order_id") or order.get("id"))
        if event.type == self.refund_event_type:
            refund = obj.get("refund") or obj
            if refund.get("status") != "COMPLETED":
                return None
            return SettlementEvent(SettlementKind.REFUNDED, refund.get("order_id"))
        return None


square_payment_provider = SquarePaymentProvider()
