"""Stock level as a tagged value.

The products table stores ``-1`` for unlimited stock. Everything above the
persistence layer works with ``Finite``/``Unlimited`` so no arithmetic is ever
done against the sentinel.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

UNLIMITED_STOCK = -1


@dataclass(frozen=True)
class Finite:
    quantity: int

    def covers(self, requested: int) -> bool:
        return self.quantity >= requested

    def minus(self, reserved: int) -> "Finite":
        return Finite(max(0, self.quantity - reserved))


@dataclass(frozen=True)
class Unlimited:
    def covers(self, requested: int) -> bool:
        return True

    def minus(self, reserved: int) -> "Unlimited":
        return self


StockLevel = Union[Finite, Unlimited]


def stock_level(value: Optional[int]) -> StockLevel:
    if value == UNLIMITED_STOCK:
        return Unlimited()
    if value is None or value < 0:
        return Finite(0)
    return Finite(int(value))


def to_column(level: StockLevel) -> int:
    if isinstance(level, Unlimited):
        return UNLIMITED_STOCK
    return level.quantity


def to_api(level: StockLevel) -> Optional[int]:
    """Quantity for API payloads; None when unlimited."""
    if isinstance(level, Unlimited):
        return None
    return level.quantity
