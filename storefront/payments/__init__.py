from .base import (
    CheckoutSessionResult,
    CreateCheckoutParams,
    LineItem,
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
