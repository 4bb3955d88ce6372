import json
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from storefront.auth import get_current_admin
from storefront.crud import create_product
from storefront.database import create_db_engine, get_db
from storefront.main import app
from storefront.models import Base
from storefront.payments.base import (
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
    get_active_payment_provider,
)

ADMIN_USER = {"id": 1, "username": "admin", "email": "admin@example.com", "is_admin": True}


class FakeProvider(PaymentProvider):
    """In-memory provider speaking Stripe-shaped events."""

    type = PaymentProviderType.STRIPE
    signature_header = "stripe-signature"
    checkout_completed_event_type = "checkout.session.completed"
    checkout_expired_event_type = "checkout.session.expired"
    refund_event_type = "charge.refunded"

    def __init__(self):
        self.fail_checkout = False
        self.refund_ok = True
        self.checkout_calls: list[CreateCheckoutParams] = []
        self.refund_calls: list[str] = []
        self.sessions: dict[str, PaymentSessionDetail] = {}
        self._counter = 0

    def create_checkout_session(self, params: CreateCheckoutParams) -> Optional[CheckoutSessionResult]:
        self.checkout_calls.append(params)
        if self.fail_checkout:
            return None
        self._counter += 1
        session_id = f"cs_test_{self._counter}"
        self.sessions[session_id] = PaymentSessionDetail(
            id=session_id,
            status="unpaid",
            amount=sum(i.unit_price * i.quantity for i in params.line_items),
            currency=params.currency,
            payment_reference=f"pi_test_{self._counter}",
            metadata=dict(params.metadata),
            provider_type=self.type,
        )
        return CheckoutSessionResult(session_id=session_id, checkout_url=f"https://pay.test/{session_id}")

    def retrieve_session(self, session_id: str) -> Optional[PaymentSession]:
        return self.sessions.get(session_id)

    def retrieve_session_detail(self, session_id: str) -> Optional[PaymentSessionDetail]:
        return self.sessions.get(session_id)

    def list_sessions(self, params: ListSessionsParams) -> PaymentSessionListResult:
        sessions = list(self.sessions.values())
        return PaymentSessionListResult(sessions=sessions[: params.limit], has_more=len(sessions) > params.limit)

    def verify_webhook_signature(self, payload: str, signature: str) -> WebhookVerifyResult:
        if signature != "valid":
            return WebhookVerifyResult(valid=False, error="Signature verification failed")
        try:
            return WebhookVerifyResult(valid=True, event=WebhookEvent.model_validate(json.loads(payload)))
        except ValueError:
            return WebhookVerifyResult(valid=False, error="Invalid event payload")

    def refund_payment(self, payment_reference: str) -> bool:
        self.refund_calls.append(payment_reference)
        return self.refund_ok

    def setup_webhook_endpoint(self, secret_key, webhook_url, existing_endpoint_id=None) -> WebhookSetupResult:
        return WebhookSetupResult(success=True, endpoint_id="we_test", secret="whsec_test")

    def interpret_event(self, event: WebhookEvent) -> Optional[SettlementEvent]:
        obj = event.data.object
        if event.type == self.checkout_completed_event_type:
            return SettlementEvent(SettlementKind.COMPLETED, obj.get("id"))
        if event.type == self.checkout_expired_event_type:
            return SettlementEvent(SettlementKind.EXPIRED, obj.get("id"))
        if event.type == self.refund_event_type:
            return SettlementEvent(SettlementKind.REFUNDED, obj.get("checkout_session"))
        return None


def webhook_body(event_type: str, obj: dict, event_id: str = "evt_1") -> str:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    monkeypatch.delenv("RABBITMQ_URL", raising=False)
    monkeypatch.delenv("PAYMENT_PROVIDER", raising=False)
    monkeypatch.setenv("CURRENCY_CODE", "GBP")
    monkeypatch.setenv("CHECKOUT_MAX_ATTEMPTS", "10")
    monkeypatch.setenv("CHECKOUT_LOCKOUT_MINUTES", "30")


@pytest.fixture
def engine(tmp_path):
    # File-backed so worker threads share one database
    engine = create_db_engine(f"sqlite:///{tmp_path / 'storefront.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_product(session_factory):
    """Create a product in its own session and return its id."""

    def _make(sku: str, stock: int = 10, unit_price: int = 1000, name: Optional[str] = None, active: bool = True) -> int:
        with session_factory() as s:
            product = create_product(
                s,
                {
                    "sku": sku,
                    "name": name or f"Product {sku}",
                    "description": "",
                    "unit_price": unit_price,
                    "stock": stock,
                    "active": active,
                },
            )
            return product.id

    return _make


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def client(session_factory, provider):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_active_payment_provider] = lambda: provider
    app.dependency_overrides[get_current_admin] = lambda: ADMIN_USER
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def unconfigured_client(client):
    app.dependency_overrides[get_active_payment_provider] = lambda: None
    return client
