"""Tests for the Stripe and Square payment adapters."""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import stripe
from square.core.api_error import ApiError
from square.environment import SquareEnvironment

from storefront.payments import square_provider
from storefront.payments.base import (
    CreateCheckoutParams,
    LineItem,
    ListSessionsParams,
    PaymentProviderType,
    SettlementEvent,
    SettlementKind,
    WebhookEvent,
    get_active_payment_provider,
)
from storefront.payments.helpers import (
    ClientCache,
    compute_hmac_sha256,
    hmac_to_base64,
    sanitize_error_detail,
    secure_compare,
)
from storefront.payments.square_provider import SquarePaymentProvider, square_payment_provider
from storefront.payments.stripe_provider import WEBHOOK_EVENTS, StripePaymentProvider, stripe_payment_provider

PARAMS = CreateCheckoutParams(
    line_items=[LineItem(name="Mug", unit_price=1250, quantity=2)],
    metadata={"reservation_ids": "1"},
    success_url="https://shop/ok",
    cancel_url="https://shop/cancel",
    currency="gbp",
)


def _event(event_type, obj):
    return WebhookEvent.model_validate({"id": "evt_1", "type": event_type, "data": {"object": obj}})


def _stripe_signature(payload, secret, timestamp=None):
    timestamp = int(timestamp if timestamp is not None else time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def stripe_client(monkeypatch):
    client = MagicMock()
    provider = StripePaymentProvider()
    monkeypatch.setattr(provider, "_get_client", lambda: client)
    return provider, client


@pytest.fixture
def square_client(monkeypatch):
    monkeypatch.setenv("SQUARE_LOCATION_ID", "LOC1")
    client = MagicMock()
    provider = SquarePaymentProvider()
    monkeypatch.setattr(provider, "_get_client", lambda: client)
    return provider, client


class TestProviderResolution:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("stripe", stripe_payment_provider),
            ("STRIPE", stripe_payment_provider),
            ("square", square_payment_provider),
            ("", None),
            ("paypal", None),
        ],
    )
    def test_resolved_from_configuration(self, monkeypatch, value, expected):
        monkeypatch.setenv("PAYMENT_PROVIDER", value)
        assert get_active_payment_provider() is expected

    def test_switch_takes_effect_per_call(self, monkeypatch):
        monkeypatch.setenv("PAYMENT_PROVIDER", "stripe")
        assert get_active_payment_provider().type == PaymentProviderType.STRIPE
        monkeypatch.setenv("PAYMENT_PROVIDER", "square")
        assert get_active_payment_provider().type == PaymentProviderType.SQUARE


class TestHelpers:
    def test_client_cache_rebuilds_on_credential_change(self):
        factory = MagicMock(side_effect=lambda key: f"client:{key}")
        cache = ClientCache("Test", factory)

        assert cache.get("") is None
        assert cache.get("k1") == "client:k1"
        assert cache.get("k1") == "client:k1"
        assert factory.call_count == 1
        assert cache.get("k2") == "client:k2"
        cache.reset()
        assert cache.get("k2") == "client:k2"
        assert factory.call_count == 3

    def test_sanitize_never_includes_message(self):
        err = stripe.CardError("card 4242 declined for bob@example.com", param=None, code="card_declined", http_status=402)
        detail = sanitize_error_detail(err)
        assert "status=402" in detail
        assert "code=card_declined" in detail
        assert "bob" not in detail
        assert sanitize_error_detail(ValueError("secret")) == "ValueError"

    def test_secure_compare(self):
        assert secure_compare("abc", "abc")
        assert not secure_compare("abc", "abd")
        assert not secure_compare("abc", "ab")


class TestStripeProvider:
    def test_create_checkout_session(self, stripe_client):
        provider, client = stripe_client
        client.create_session.return_value = {"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"}

        result = provider.create_checkout_session(PARAMS)
        assert (result.session_id, result.checkout_url) == ("cs_1", "https://checkout.stripe.test/cs_1")
        kwargs = client.create_session.call_args.kwargs
        assert kwargs["mode"] == "payment"
        assert kwargs["line_items"] == [
            {"price_data": {"currency": "gbp", "unit_amount": 1250, "product_data": {"name": "Mug"}}, "quantity": 2}
        ]
        assert kwargs["metadata"] == {"reservation_ids": "1"}

    def test_checkout_session_expires_with_reservations(self, stripe_client):
        provider, client = stripe_client
        client.create_session.return_value = {"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"}
        with patch("storefront.payments.stripe_provider.time.time", return_value=1_700_000_000):
            provider.create_checkout_session(PARAMS)
        assert client.create_session.call_args.kwargs["expires_at"] == 1_700_000_000 + 31 * 60

    def test_create_checkout_failure_collapses_to_none(self, stripe_client):
        provider, client = stripe_client
        client.create_session.side_effect = stripe.APIConnectionError("network down")
        with patch("storefront.payments.helpers.log_error") as log_error:
            assert provider.create_checkout_session(PARAMS) is None
        assert log_error.call_args[0][0].value == "E_STRIPE_CHECKOUT"

    def test_session_without_url_is_none(self, stripe_client):
        provider, client = stripe_client
        client.create_session.return_value = {"id": "cs_1", "url": None}
        assert provider.create_checkout_session(PARAMS) is None

    def test_not_configured_without_secret_key(self, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        provider = StripePaymentProvider()
        assert provider.create_checkout_session(PARAMS) is None
        assert provider.refund_payment("pi_1") is False
        assert provider.list_sessions(ListSessionsParams(limit=20)).sessions == []

    def test_list_sessions(self, stripe_client):
        provider, client = stripe_client
        client.list_sessions.return_value = {
            "data": [
                {
                    "id": "cs_1",
                    "payment_status": "paid",
                    "amount_total": 2500,
                    "currency": "gbp",
                    "customer_details": {"email": "buyer@example.com"},
                    "created": 1700000000,
                    "url": None,
                }
            ],
            "has_more": True,
        }
        result = provider.list_sessions(ListSessionsParams(limit=20, starting_after="cs_0"))
        client.list_sessions.assert_called_once_with(limit=20, starting_after="cs_0")
        [session] = result.sessions
        assert session.customer_email == "buyer@example.com"
        assert session.created.startswith("2023-11-14")
        assert result.has_more and result.next_cursor == "cs_1"

    def test_list_sessions_failure_degrades(self, stripe_client):
        provider, client = stripe_client
        client.list_sessions.side_effect = stripe.APIConnectionError("down")
        result = provider.list_sessions(ListSessionsParams(limit=20))
        assert (result.sessions, result.has_more) == ([], False)

    def test_session_detail(self, stripe_client):
        provider, client = stripe_client
        client.retrieve_session.return_value = {
            "id": "cs_1",
            "payment_status": "paid",
            "amount_total": 2500,
            "currency": "gbp",
            "customer_details": {"email": "buyer@example.com", "name": "Ada"},
            "created": 1700000000,
            "payment_intent": "pi_1",
            "metadata": {"reservation_ids": "1"},
            "line_items": {"data": [{"description": "Mug", "quantity": 2, "amount_total": 2500}]},
        }
        detail = provider.retrieve_session_detail("cs_1")
        client.retrieve_session.assert_called_once_with("cs_1", expand=["line_items"])
        assert detail.payment_reference == "pi_1"
        assert detail.customer_name == "Ada"
        assert detail.line_items == [{"name": "Mug", "quantity": 2, "amount_total": 2500}]
        assert detail.dashboard_url == "https://dashboard.stripe.com/payments/pi_1"
        assert detail.provider_type == PaymentProviderType.STRIPE

    def test_refund(self, stripe_client):
        provider, client = stripe_client
        client.create_refund.return_value = {"id": "re_1"}
        assert provider.refund_payment("pi_1") is True
        client.create_refund.assert_called_once_with("pi_1")

        client.create_refund.side_effect = stripe.InvalidRequestError("already refunded", param=None)
        assert provider.refund_payment("pi_1") is False

    def test_interpret_events(self, stripe_client):
        provider, client = stripe_client
        client.list_sessions.return_value = {"data": [{"id": "cs_9"}]}

        assert provider.interpret_event(_event("checkout.session.completed", {"id": "cs_1"})) == SettlementEvent(
            SettlementKind.COMPLETED, "cs_1"
        )
        assert provider.interpret_event(_event("checkout.session.expired", {"id": "cs_2"})) == SettlementEvent(
            SettlementKind.EXPIRED, "cs_2"
        )
        assert provider.interpret_event(_event("charge.refunded", {"payment_intent": "pi_9"})) == SettlementEvent(
            SettlementKind.REFUNDED, "cs_9"
        )
        client.list_sessions.assert_called_once_with(payment_intent="pi_9", limit=1)
        assert provider.interpret_event(_event("payment_intent.created", {"id": "pi_1"})) is None

    def test_refund_event_without_matching_session(self, stripe_client):
        provider, client = stripe_client
        client.list_sessions.return_value = {"data": []}
        settlement = provider.interpret_event(_event("charge.refunded", {"payment_intent": "pi_x"}))
        assert settlement.session_id is None


class TestStripeWebhookSignature:
    SECRET = "whsec_test_secret"

    @pytest.fixture(autouse=True)
    def _secret(self, monkeypatch):
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", self.SECRET)

    def test_valid_signature(self):
        payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {"id": "cs_1"}}})
        result = stripe_payment_provider.verify_webhook_signature(payload, _stripe_signature(payload, self.SECRET))
        assert result.valid
        assert result.event.type == "checkout.session.completed"
        assert result.event.data.object["id"] == "cs_1"

    def test_tampered_payload(self):
        payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {"id": "cs_1"}}})
        signature = _stripe_signature(payload, self.SECRET)
        result = stripe_payment_provider.verify_webhook_signature(payload.replace("cs_1", "cs_2"), signature)
        assert not result.valid

    def test_wrong_secret(self):
        payload = "{}"
        result = stripe_payment_provider.verify_webhook_signature(payload, _stripe_signature(payload, "whsec_other"))
        assert not result.valid

    def test_stale_timestamp(self):
        payload = json.dumps({"id": "evt_1", "type": "x", "data": {"object": {}}})
        signature = _stripe_signature(payload, self.SECRET, timestamp=time.time() - 600)
        assert not stripe_payment_provider.verify_webhook_signature(payload, signature).valid

    def test_malformed_header(self):
        assert not stripe_payment_provider.verify_webhook_signature("{}", "garbage").valid
        assert not stripe_payment_provider.verify_webhook_signature("{}", "").valid

    def test_signed_but_not_an_event(self):
        payload = json.dumps({"hello": "world"})
        result = stripe_payment_provider.verify_webhook_signature(payload, _stripe_signature(payload, self.SECRET))
        assert not result.valid
        assert result.error == "Invalid event payload"

    def test_missing_secret(self, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")
        payload = "{}"
        result = stripe_payment_provider.verify_webhook_signature(payload, _stripe_signature(payload, self.SECRET))
        assert not result.valid
        assert result.error == "Webhook secret not configured"


class TestStripeWebhookSetup:
    URL = "https://shop.example.com/payment/webhook"

    def test_recreates_endpoint_for_url(self):
        with patch.object(stripe.WebhookEndpoint, "list", return_value={"data": [{"id": "we_old", "url": self.URL}]}), patch.object(
            stripe.WebhookEndpoint, "delete"
        ) as delete, patch.object(
            stripe.WebhookEndpoint, "create", return_value={"id": "we_new", "secret": "whsec_new"}
        ) as create:
            result = stripe_payment_provider.setup_webhook_endpoint("sk_test", self.URL, "we_prev")

        assert (result.success, result.endpoint_id, result.secret) == (True, "we_new", "whsec_new")
        assert [c.args[0] for c in delete.call_args_list] == ["we_prev", "we_old"]
        create.assert_called_once_with(url=self.URL, enabled_events=WEBHOOK_EVENTS, api_key="sk_test")

    def test_api_error(self):
        with patch.object(
            stripe.WebhookEndpoint, "list", side_effect=stripe.AuthenticationError("bad key", http_status=401)
        ):
            result = stripe_payment_provider.setup_webhook_endpoint("sk_bad", self.URL)
        assert result.success is False
        assert result.error == "status=401"


class TestSquareProvider:
    def test_create_checkout_session(self, square_client):
        provider, client = square_client
        client.checkout.payment_links.create.return_value = SimpleNamespace(
            payment_link=SimpleNamespace(url="https://square.link/u/abc", order_id="ord_1")
        )

        result = provider.create_checkout_session(PARAMS)
        assert (result.session_id, result.checkout_url) == ("ord_1", "https://square.link/u/abc")
        kwargs = client.checkout.payment_links.create.call_args.kwargs
        assert kwargs["order"]["location_id"] == "LOC1"
        assert kwargs["order"]["line_items"] == [
            {"name": "Mug", "quantity": "2", "base_price_money": {"amount": 1250, "currency": "GBP"}}
        ]
        assert kwargs["order"]["metadata"] == {"reservation_ids": "1"}
        assert kwargs["checkout_options"] == {"redirect_url": "https://shop/ok"}
        assert kwargs["idempotency_key"]

    def test_checkout_without_link_url(self, square_client):
        provider, client = square_client
        client.checkout.payment_links.create.return_value = SimpleNamespace(payment_link=None)
        assert provider.create_checkout_session(PARAMS) is None

    def test_missing_location(self, square_client, monkeypatch):
        provider, client = square_client
        monkeypatch.delenv("SQUARE_LOCATION_ID")
        assert provider.create_checkout_session(PARAMS) is None
        client.checkout.payment_links.create.assert_not_called()

    def test_checkout_api_error(self, square_client):
        provider, client = square_client
        client.checkout.payment_links.create.side_effect = ApiError(status_code=400, body={"errors": []})
        with patch("storefront.payments.helpers.log_error") as log_error:
            assert provider.create_checkout_session(PARAMS) is None
        assert "status=400" in log_error.call_args[0][1]

    def test_refund_uses_payment_amount(self, square_client):
        provider, client = square_client
        client.payments.get.return_value = SimpleNamespace(
            payment=SimpleNamespace(id="pay_1", amount_money=SimpleNamespace(amount=2500, currency="GBP"))
        )
        client.refunds.refund_payment.return_value = SimpleNamespace(refund=SimpleNamespace(id="ref_1"))

        assert provider.refund_payment("pay_1") is True
        assert client.payments.get.call_args.kwargs == {"payment_id": "pay_1"}
        kwargs = client.refunds.refund_payment.call_args.kwargs
        assert kwargs["payment_id"] == "pay_1"
        assert kwargs["amount_money"] == {"amount": 2500, "currency": "GBP"}

    def test_refund_idempotency_keys_are_fresh(self, square_client):
        provider, client = square_client
        client.payments.get.return_value = {"payment": {"amount_money": {"amount": 100, "currency": "GBP"}}}
        provider.refund_payment("pay_1")
        provider.refund_payment("pay_1")
        keys = [c.kwargs["idempotency_key"] for c in client.refunds.refund_payment.call_args_list]
        assert len(set(keys)) == 2

    def test_refund_without_amount(self, square_client):
        provider, client = square_client
        client.payments.get.return_value = {"payment": {"id": "pay_1"}}
        assert provider.refund_payment("pay_1") is False
        client.refunds.refund_payment.assert_not_called()

    def test_refund_rejected(self, square_client):
        provider, client = square_client
        client.payments.get.return_value = {"payment": {"amount_money": {"amount": 100, "currency": "GBP"}}}
        client.refunds.refund_payment.side_effect = ApiError(status_code=402, body=None)
        assert provider.refund_payment("pay_1") is False

    def test_session_detail(self, square_client):
        provider, client = square_client
        client.orders.get.return_value = {
            "order": {
                "id": "ord_1",
                "state": "COMPLETED",
                "total_money": {"amount": 2500, "currency": "GBP"},
                "metadata": {"reservation_ids": "1"},
                "tenders": [{"id": "t1", "payment_id": "pay_1"}],
                "line_items": [{"name": "Mug", "quantity": "2", "total_money": {"amount": 2500}}],
            }
        }
        detail = provider.retrieve_session_detail("ord_1")
        assert client.orders.get.call_args.kwargs == {"order_id": "ord_1"}
        assert detail.payment_reference == "pay_1"
        assert detail.status == "COMPLETED"
        assert detail.currency == "gbp"
        assert detail.line_items == [{"name": "Mug", "quantity": 2, "amount_total": 2500}]
        assert detail.dashboard_url == "https://squareup.com/dashboard/orders/overview/ord_1"

    def test_unknown_order(self, square_client):
        provider, client = square_client
        client.orders.get.side_effect = ApiError(status_code=404, body=None)
        assert provider.retrieve_session_detail("ord_missing") is None

    def test_list_sessions_uses_cursor(self, square_client):
        provider, client = square_client
        client.orders.search.return_value = {"orders": [{"id": "ord_1", "state": "OPEN"}], "cursor": "next-page"}
        result = provider.list_sessions(ListSessionsParams(limit=20, starting_after="prev-page"))
        kwargs = client.orders.search.call_args.kwargs
        assert kwargs["cursor"] == "prev-page"
        assert kwargs["location_ids"] == ["LOC1"]
        assert result.has_more and result.next_cursor == "next-page"

        client.orders.search.return_value = {"orders": []}
        result = provider.list_sessions(ListSessionsParams(limit=20))
        assert "cursor" not in client.orders.search.call_args.kwargs
        assert (result.has_more, result.next_cursor) == (False, None)

    def test_webhook_setup_is_manual(self):
        result = square_payment_provider.setup_webhook_endpoint("token", "https://x/payment/webhook")
        assert result.success is False
        assert "Square Developer Dashboard" in result.error

    def test_interpret_events(self):
        provider = square_payment_provider
        completed = _event("payment.updated", {"payment": {"id": "pay_1", "order_id": "ord_1", "status": "COMPLETED"}})
        assert provider.interpret_event(completed) == SettlementEvent(SettlementKind.COMPLETED, "ord_1")

        approved = _event("payment.updated", {"payment": {"id": "pay_1", "order_id": "ord_1", "status": "APPROVED"}})
        assert provider.interpret_event(approved) is None

        cancelled = _event("order.updated", {"order_updated": {"order_id": "ord_2", "state": "CANCELED"}})
        assert provider.interpret_event(cancelled) == SettlementEvent(SettlementKind.EXPIRED, "ord_2")

        still_open = _event("order.updated", {"order_updated": {"order_id": "ord_2", "state": "OPEN"}})
        assert provider.interpret_event(still_open) is None

        refunded = _event("refund.updated", {"refund": {"id": "ref_1", "order_id": "ord_3", "status": "COMPLETED"}})
        assert provider.interpret_event(refunded) == SettlementEvent(SettlementKind.REFUNDED, "ord_3")


class TestSquareWebhookSignature:
    KEY = "sq-signature-key"

    @pytest.fixture(autouse=True)
    def _config(self, monkeypatch):
        monkeypatch.setenv("SQUARE_WEBHOOK_SIGNATURE_KEY", self.KEY)
        monkeypatch.setenv("ALLOWED_DOMAIN", "shop.example.com")

    def _sign(self, payload, key=KEY, url="https://shop.example.com/payment/webhook"):
        return hmac_to_base64(compute_hmac_sha256(url + payload, key))

    def test_valid_signature(self):
        payload = json.dumps(
            {"event_id": "sq_evt_1", "type": "payment.updated", "data": {"object": {"payment": {"status": "COMPLETED"}}}}
        )
        result = square_payment_provider.verify_webhook_signature(payload, self._sign(payload))
        assert result.valid
        assert result.event.id == "sq_evt_1"

    def test_signature_bound_to_notification_url(self):
        payload = json.dumps({"type": "payment.updated", "data": {"object": {}}})
        signature = self._sign(payload, url="https://other.example.com/payment/webhook")
        assert not square_payment_provider.verify_webhook_signature(payload, signature).valid

    def test_mismatch(self):
        payload = json.dumps({"type": "payment.updated", "data": {"object": {}}})
        assert not square_payment_provider.verify_webhook_signature(payload, self._sign(payload, key="wrong")).valid

    def test_invalid_json(self):
        payload = "not-json"
        result = square_payment_provider.verify_webhook_signature(payload, self._sign(payload))
        assert not result.valid
        assert result.error == "Invalid JSON payload"

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("SQUARE_WEBHOOK_SIGNATURE_KEY")
        result = square_payment_provider.verify_webhook_signature("{}", "sig")
        assert result.error == "Webhook signature key not configured"


class TestSquareClient:
    @pytest.fixture(autouse=True)
    def _fresh_cache(self):
        square_provider.reset_client()
        yield
        square_provider.reset_client()

    def test_sandbox_by_default(self, monkeypatch):
        monkeypatch.delenv("SQUARE_ENVIRONMENT", raising=False)
        with patch.object(square_provider, "Square") as square_cls:
            square_provider._build_client("tok_123")
        square_cls.assert_called_once_with(token="tok_123", environment=SquareEnvironment.SANDBOX)

    def test_production_environment(self, monkeypatch):
        monkeypatch.setenv("SQUARE_ENVIRONMENT", "Production")
        with patch.object(square_provider, "Square") as square_cls:
            square_provider._build_client("tok_123")
        assert square_cls.call_args.kwargs["environment"] == SquareEnvironment.PRODUCTION

    def test_client_cached_per_token(self, monkeypatch):
        monkeypatch.setenv("SQUARE_ACCESS_TOKEN", "tok_a")
        provider = SquarePaymentProvider()
        with patch.object(square_provider, "Square", side_effect=lambda **kw: MagicMock()) as square_cls:
            first = provider._get_client()
            assert provider._get_client() is first
            monkeypatch.setenv("SQUARE_ACCESS_TOKEN", "tok_b")
            assert provider._get_client() is not first
        assert square_cls.call_count == 2

    def test_no_token_no_client(self, monkeypatch):
        monkeypatch.delenv("SQUARE_ACCESS_TOKEN", raising=False)
        assert SquarePaymentProvider()._get_client() is None
