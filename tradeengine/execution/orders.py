"""
Order routing interface for live trading.

In live mode the engine does not simulate exits; it sizes the trade
from the broker's equity and sends a bracket order (entry plus
protective stop and first target) through an `OrderRouter`.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Optional

from .models import TradePlan


@dataclass
class PlacedOrder:
    """Broker acknowledgement of a bracket order."""
    symbol: str
    side: str
    qty: float
    order_id: Optional[str] = None
    price: Optional[float] = None


class OrderRouter(abc.ABC):
    """Broker connectivity needed by the live path."""

    @abc.abstractmethod
    def fetch_equity(self) -> float:
        """Return the account equity used for sizing."""

    @abc.abstractmethod
    def place_bracket(self, symbol: str, plan: TradePlan, qty: float) -> PlacedOrder:
        """Send a market entry with stop-loss and take-profit attached."""

    def has_open_position(self, symbol: str) -> bool:
        """Return ``True`` when the broker already holds a position on ``symbol``."""
        return False
