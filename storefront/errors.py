from __future__ import annotations


class StorefrontError(Exception):
    """Base class for errors surfaced to API callers."""


class ProductNotFoundError(StorefrontError):
    def __init__(self, sku: str):
        super().__init__(f"Product not found: {sku}")
        self.sku = sku


class InsufficientStockError(StorefrontError):
    def __init__(self, sku: str, requested: int):
        super().__init__(f"Insufficient stock for {sku}")
        self.sku = sku
        self.requested = requested


class ProviderNotConfiguredError(StorefrontError):
    def __init__(self, message: str = "Payments not configured"):
        super().__init__(message)


class PaymentProviderError(StorefrontError):
    """The payment provider failed; local state has already been compensated."""


class OrderNotFoundError(StorefrontError):
    def __init__(self, session_id: str):
        super().__init__(f"Order not found: {session_id}")
        self.session_id = session_id


class MissingPaymentReferenceError(StorefrontError):
    def __init__(self, session_id: str):
        super().__init__(f"No payment reference for order {session_id}")
        self.session_id = session_id
