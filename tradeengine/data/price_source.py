"""
Price source interface.

The engine reads market data through this small abstraction so that
the MetaTrader 5 feed, CSV replays and test doubles are
interchangeable.
"""

from __future__ import annotations

import abc
from typing import Optional
import pandas as pd

from ..execution.models import Instrument


class PriceSource(abc.ABC):
    """Provide bars, last prices and instrument metadata for symbols."""

    @abc.abstractmethod
    def fetch_bars(self, symbol: str, limit: int) -> pd.DataFrame:
        """Return up to ``limit`` recent bars, oldest first.

        The frame is indexed by bar open time and has ``open``, ``high``,
        ``low``, ``close`` and ``volume`` columns.  The last row may be
        the bar still forming.
        """

    @abc.abstractmethod
    def fetch_tick(self, symbol: str) -> Optional[float]:
        """Return the last traded price, or ``None`` when unavailable."""

    def instrument(self, symbol: str) -> Optional[Instrument]:
        """Return quantity constraints for ``symbol`` if the source knows them."""
        return None
