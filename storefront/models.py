import datetime as dt
from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base

from .stock import StockLevel, stock_level

Base = declarative_base()

# Largest value the Integer columns hold on every supported backend
INT32_MAX = 2**31 - 1


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"


# Statuses that hold stock
ACTIVE_STATUSES = (ReservationStatus.PENDING.value, ReservationStatus.CONFIRMED.value)


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")
    unit_price = Column(Integer, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    created = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def stock_level(self) -> StockLevel:
        return stock_level(self.stock)


class StockReservation(Base):
    """A hold of `quantity` units against a product for one checkout attempt.

    Availability is never stored; it is product.stock minus the sum of
    pending and confirmed reservations.
    """

    __tablename__ = "stock_reservations"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    provider_session_id = Column(String(255), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=ReservationStatus.PENDING.value, index=True)
    created = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class ProcessedPayment(Base):
    """Claim marker so a completed checkout is reconciled once per session."""

    __tablename__ = "processed_payments"

    payment_session_id = Column(String(255), primary_key=True)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class CheckoutAttempt(Base):
    __tablename__ = "checkout_attempts"

    ip = Column(String(64), primary_key=True)
    attempts = Column(Integer, nullable=False, default=0)
    first_attempt_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    locked_until = Column(DateTime(timezone=True), nullable=True)


class ActivityLog(Base):
    """Admin-visible record of order events."""

    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True, index=True)
    created = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    message = Column(Text, nullable=False)
