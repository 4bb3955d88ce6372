"""Categorized error logging shared by the payment adapters and the reservation flows."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

logger = logging.getLogger("storefront")


class ErrorCode(str, Enum):
    CONFIG_MISSING = "E_CONFIG_MISSING"
    PAYMENT_CHECKOUT = "E_PAYMENT_CHECKOUT"
    STRIPE_CHECKOUT = "E_STRIPE_CHECKOUT"
    STRIPE_SESSION = "E_STRIPE_SESSION"
    STRIPE_REFUND = "E_STRIPE_REFUND"
    STRIPE_SIGNATURE = "E_STRIPE_SIGNATURE"
    STRIPE_WEBHOOK_SETUP = "E_STRIPE_WEBHOOK_SETUP"
    SQUARE_CHECKOUT = "E_SQUARE_CHECKOUT"
    SQUARE_ORDER = "E_SQUARE_ORDER"
    SQUARE_SESSION = "E_SQUARE_SESSION"
    SQUARE_REFUND = "E_SQUARE_REFUND"
    SQUARE_SIGNATURE = "E_SQUARE_SIGNATURE"
    RESERVATION_SWEEP = "E_RESERVATION_SWEEP"
    NOTIFICATION_SEND = "E_NOTIFICATION_SEND"


def log_error(code: ErrorCode, detail: Optional[str] = None) -> None:
    if detail:
        logger.error("[%s] %s", code.value, detail)
    else:
        logger.error("[%s]", code.value)


def log_debug(category: str, message: str) -> None:
    logger.debug("[%s] %s", category, message)
