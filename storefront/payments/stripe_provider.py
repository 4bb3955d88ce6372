"""Stripe hosted-checkout adapter."""
from __future__ import annotations

import datetime as dt
import json
import time
from typing import Any, Optional

import stripe

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
from .helpers import ClientCache, get_field, safe_call, sanitize_error_detail, to_session_list_result

WEBHOOK_TOLERANCE_SECONDS = 300

# Stripe requires at least 30 minutes after creation, measured on its clock
CHECKOUT_SESSION_TTL_SECONDS = 31 * 60

WEBHOOK_EVENTS = [
    "checkout.session.completed",
    "checkout.session.expired",
    "charge.refunded",
]


class _StripeClient:
    """Stripe resource calls bound to one secret key."""

    def __init__(self, api_key: str):
        self.api_key = api_key

    def create_session(self, **params: Any):
        return stripe.checkout.Session.create(api_key=self.api_key, **params)

    def retrieve_session(self, session_id: str, expand: Optional[list[str]] = None):
        if expand:
            return stripe.checkout.Session.retrieve(session_id, api_key=self.api_key, expand=expand)
        return stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)

    def list_sessions(self, **params: Any):
        return stripe.checkout.Session.list(api_key=self.api_key, **params)

    def create_refund(self, payment_intent: str):
        return stripe.Refund.create(api_key=self.api_key, payment_intent=payment_intent)


_client_cache: ClientCache[_StripeClient] = ClientCache("Stripe", _StripeClient)


def reset_client() -> None:
    _client_cache.reset()


def _iso(timestamp: Optional[int]) -> str:
    if not timestamp:
        return ""
    return dt.datetime.fromtimestamp(int(timestamp), tz=dt.timezone.utc).isoformat()


def _payment_intent_id(session: Any) -> Optional[str]:
    intent = get_field(session, "payment_intent")
    if intent is None or isinstance(intent, str):
        return intent
    return get_field(intent, "id")


def _to_payment_session(session: Any) -> PaymentSession:
    details = get_field(session, "customer_details")
    return PaymentSession(
        id=get_field(session, "id", ""),
        status=get_field(session, "payment_status", "") or "",
        amount=get_field(session, "amount_total"),
        currency=get_field(session, "currency"),
        customer_email=get_field(details, "email") or get_field(session, "customer_email"),
        created=_iso(get_field(session, "created")),
        url=get_field(session, "url"),
    )


class StripePaymentProvider(PaymentProvider):
    type = PaymentProviderType.STRIPE
    signature_header = "stripe-signature"
    checkout_completed_event_type = "checkout.session.completed"
    checkout_expired_event_type = "checkout.session.expired"
    refund_event_type = "charge.refunded"

    def _get_client(self) -> Optional[_StripeClient]:
        return _client_cache.get(config.get_stripe_secret_key())

    def create_checkout_session(self, params: CreateCheckoutParams) -> Optional[CheckoutSessionResult]:
        client = self._get_client()
        if client is None:
            return None

        def _create():
            session = client.create_session(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": params.currency,
                            "unit_amount": item.unit_price,
                            "product_data": {"name": item.name},
                        },
                        "quantity": item.quantity,
                    }
                    for item in params.line_items
                ],
                metadata=params.metadata,
                success_url=params.success_url,
                cancel_url=params.cancel_url,
                expires_at=int(time.time()) + CHECKOUT_SESSION_TTL_SECONDS,
            )
            url = get_field(session, "url")
            if not url:
                return None
            return CheckoutSessionResult(session_id=get_field(session, "id"), checkout_url=url)

        return safe_call(_create, ErrorCode.STRIPE_CHECKOUT)

    def retrieve_session(self, session_id: str) -> Optional[PaymentSession]:
        client = self._get_client()
        if client is None:
            return None
        session = safe_call(lambda: client.retrieve_session(session_id), ErrorCode.STRIPE_SESSION)
        return _to_payment_session(session) if session is not None else None

    def retrieve_session_detail(self, session_id: str) -> Optional[PaymentSessionDetail]:
        client = self._get_client()
        if client is None:
            return None
        session = safe_call(
            lambda: client.retrieve_session(session_id, expand=["line_items"]),
            ErrorCode.STRIPE_SESSION,
        )
        if session is None:
            return None

        base = _to_payment_session(session)
        line_items = [
            {
                "name": get_field(li, "description", ""),
                "quantity": get_field(li, "quantity", 0),
                "amount_total": get_field(li, "amount_total"),
            }
            for li in (get_field(get_field(session, "line_items"), "data") or [])
        ]
        intent_id = _payment_intent_id(session)
        return PaymentSessionDetail(
            **base.__dict__,
            line_items=line_items,
            metadata=dict(get_field(session, "metadata") or {}),
            customer_name=get_field(get_field(session, "customer_details"), "name"),
            payment_reference=intent_id,
            dashboard_url=f"https://dashboard.stripe.com/payments/{intent_id}" if intent_id else None,
            provider_type=self.type,
        )

    def list_sessions(self, params: ListSessionsParams) -> PaymentSessionListResult:
        client = self._get_client()
        if client is None:
            return PaymentSessionListResult(sessions=[], has_more=False)

        list_params: dict[str, Any] = {"limit": params.limit}
        if params.starting_after:
            list_params["starting_after"] = params.starting_after
        result = safe_call(lambda: client.list_sessions(**list_params), ErrorCode.STRIPE_SESSION)
        if result is None:
            return PaymentSessionListResult(sessions=[], has_more=False)
        return to_session_list_result(
            get_field(result, "data") or [], bool(get_field(result, "has_more")), _to_payment_session
        )

    def verify_webhook_signature(self, payload: str, signature: str) -> WebhookVerifyResult:
        secret = config.get_stripe_webhook_secret()
        if not secret:
            log_error(ErrorCode.CONFIG_MISSING, "STRIPE_WEBHOOK_SECRET is not configured")
            return WebhookVerifyResult(valid=False, error="Webhook secret not configured")
        if not signature:
            return WebhookVerifyResult(valid=False, error="Missing signature")

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, secret, tolerance=WEBHOOK_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as e:
            log_error(ErrorCode.STRIPE_SIGNATURE, type(e).__name__)
            return WebhookVerifyResult(valid=False, error="Signature verification failed")

        try:
            event = WebhookEvent.model_validate(json.loads(payload))
        except ValueError:
            return WebhookVerifyResult(valid=False, error="Invalid event payload")
        return WebhookVerifyResult(valid=True, event=event)

    def refund_payment(self, payment_reference: str) -> bool:
        client = self._get_client()
        if client is None:
            return False
        refund = safe_call(lambda: client.create_refund(payment_reference), ErrorCode.STRIPE_REFUND)
        return refund is not None

    def setup_webhook_endpoint(
        self,
        secret_key: str,
        webhook_url: str,
        existing_endpoint_id: Optional[str] = None,
    ) -> WebhookSetupResult:
        # Stripe only reveals the signing secret on create, so endpoints are recreated
        try:
            if existing_endpoint_id:
                try:
                    stripe.WebhookEndpoint.delete(existing_endpoint_id, api_key=secret_key)
                except stripe.StripeError:
                    log_debug("Stripe", f"Could not delete endpoint {existing_endpoint_id}")

            existing = stripe.WebhookEndpoint.list(limit=100, api_key=secret_key)
            for endpoint in get_field(existing, "data") or []:
                if get_field(endpoint, "url") == webhook_url:
                    stripe.WebhookEndpoint.delete(get_field(endpoint, "id"), api_key=secret_key)

            endpoint = stripe.WebhookEndpoint.create(
                url=webhook_url,
                enabled_events=WEBHOOK_EVENTS,
                api_key=secret_key,
            )
        except stripe.StripeError as e:
            log_error(ErrorCode.STRIPE_WEBHOOK_SETUP, sanitize_error_detail(e))
            return WebhookSetupResult(success=False, error=sanitize_error_detail(e))

        secret = get_field(endpoint, "secret")
        if not secret:
            return WebhookSetupResult(success=False, error="Stripe did not return webhook secret")
        return WebhookSetupResult(success=True, endpoint_id=get_field(endpoint, "id"), secret=secret)

    def _session_for_payment_intent(self, payment_intent: Optional[str]) -> Optional[str]:
        if not payment_intent:
            return None
        client = self._get_client()
        if client is None:
            return None
        result = safe_call(
            lambda: client.list_sessions(payment_intent=payment_intent, limit=1),
            ErrorCode.STRIPE_SESSION,
        )
        sessions = get_field(result, "data") or []
        return get_field(sessions[0], "id") if sessions else None

    def interpret_event(self, event: WebhookEvent) -> Optional[SettlementEvent]:
        obj = event.data.object
        if event.type == self.checkout_completed_event_type:
            return SettlementEvent(SettlementKind.COMPLETED, obj.get("id"))
        if event.type == self.checkout_expired_event_type:
            return SettlementEvent(SettlementKind.EXPIRED, obj.get("id"))
        if event.type == self.refund_event_type:
            return SettlementEvent(
                SettlementKind.REFUNDED,
                self._session_for_payment_intent(obj.get("payment_intent")),
            )
        return None


stripe_payment_provider = StripePaymentProvider()
