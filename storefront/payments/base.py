"""Payment provider abstraction.

The checkout, webhook and refund flows talk to a `PaymentProvider` and never
to a specific SDK. The active provider is resolved per call from
configuration, so switching providers in settings takes effect immediately.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .. import config
from ..logger import log_debug


class PaymentProviderType(str, Enum):
    STRIPE = "stripe"
    SQUARE = "square"


@dataclass
class LineItem:
    name: str
    unit_price: int
    quantity: int


@dataclass
class CreateCheckoutParams:
    line_items: list[LineItem]
    metadata: dict[str, str]
    success_url: str
    cancel_url: str
    currency: str


@dataclass
class CheckoutSessionResult:
    session_id: str
    checkout_url: str


@dataclass
class PaymentSession:
    id: str
    status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    customer_email: Optional[str] = None
    created: str = ""
    url: Optional[str] = None


@dataclass
class PaymentSessionDetail(PaymentSession):
    line_items: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    customer_name: Optional[str] = None
    payment_reference: Optional[str] = None
    dashboard_url: Optional[str] = None
    provider_type: Optional[PaymentProviderType] = None


@dataclass
class ListSessionsParams:
    limit: int
    starting_after: Optional[str] = None


@dataclass
class PaymentSessionListResult:
    sessions: list[PaymentSession]
    has_more: bool
    # Cursor for the next page; a session id for Stripe, an opaque token for Square
    next_cursor: Optional[str] = None


class WebhookEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    """Provider-agnostic webhook envelope: an id, a type and data.object."""

    model_config = ConfigDict(extra="allow")

    id: str = ""
    type: str
    data: WebhookEventData


@dataclass
class WebhookVerifyResult:
    valid: bool
    event: Optional[WebhookEvent] = None
    error: Optional[str] = None


@dataclass
class WebhookSetupResult:
    success: bool
    endpoint_id: Optional[str] = None
    secret: Optional[str] = None
    error: Optional[str] = None


class SettlementKind(str, Enum):
    COMPLETED = "completed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


@dataclass
class SettlementEvent:
    kind: SettlementKind
    session_id: Optional[str]


class PaymentProvider(ABC):
    """Capabilities every payment provider implements.

    Methods that call the provider's API never raise for provider-side
    failures: they log a categorized error and return None / False / an
    empty listing instead.
    """

    type: PaymentProviderType
    signature_header: str
    checkout_completed_event_type: str
    checkout_expired_event_type: str
    refund_event_type: str

    @abstractmethod
    def create_checkout_session(self, params: CreateCheckoutParams) -> Optional[CheckoutSessionResult]:
        ...

    @abstractmethod
    def retrieve_session(self, session_id: str) -> Optional[PaymentSession]:
        ...

    @abstractmethod
    def retrieve_session_detail(self, session_id: str) -> Optional[PaymentSessionDetail]:
        ...

    @abstractmethod
    def list_sessions(self, params: ListSessionsParams) -> PaymentSessionListResult:
        ...

    @abstractmethod
    def verify_webhook_signature(self, payload: str, signature: str) -> WebhookVerifyResult:
        ...

    @abstractmethod
    def refund_payment(self, payment_reference: str) -> bool:
        ...

    @abstractmethod
    def setup_webhook_endpoint(
        self,
        secret_key: str,
        webhook_url: str,
        existing_endpoint_id: Optional[str] = None,
    ) -> WebhookSetupResult:
        ...

    @abstractmethod
    def interpret_event(self, event: WebhookEvent) -> Optional[SettlementEvent]:
        """Map a verified event to a settlement, or None if it is not one."""


def get_active_payment_provider() -> Optional[PaymentProvider]:
    """Resolve the provider selected in configuration; None if payments are off."""
    provider_type = config.get_payment_provider()
    if not provider_type:
        log_debug("Payment", "No payment provider configured")
        return None

    log_debug("Payment", f"Resolving payment provider: {provider_type}")

    if provider_type == PaymentProviderType.STRIPE.value:
        from .stripe_provider import stripe_payment_provider

        return stripe_payment_provider

    from .square_provider import square_payment_provider

    return square_payment_provider
