"""
MetaTrader 5 price source.

This module wraps the `MetaTrader5` Python package behind the
`PriceSource` interface used by the paper, live and real-time runners.
If the package is not installed or initialisation fails, the code
raises a clear exception.  Users can skip installing MetaTrader5 when
running offline backtests.
"""

from __future__ import annotations

import logging
import math
from typing import Optional
import pandas as pd

from ..config.schema import MT5Config
from ..execution.models import Instrument
from .price_source import PriceSource

# Attempt to import MetaTrader5.  If unavailable, mt5 will be None.
try:
    import MetaTrader5 as mt5  # type: ignore
except ImportError:
    mt5 = None  # Will be checked at runtime


logger = logging.getLogger(__name__)


class MT5DataFeed(PriceSource):
    """Handle connection to MetaTrader 5 and retrieval of bars and ticks."""

    def __init__(self, config: MT5Config, timezone: str, timeframe: str = "H4") -> None:
        self.config = config
        self.timezone = timezone
        self.timeframe = timeframe
        self._connected = False

    def connect(self) -> None:
        """Initialise the MetaTrader 5 terminal.

        Raises
        ------
        RuntimeError
            If the MetaTrader5 package is not installed or initialisation fails.
        """
        if mt5 is None:
            raise RuntimeError(
                "MetaTrader5 package is not installed.  Install it with 'pip install MetaTrader5' to use paper or live trading."
            )
        if not mt5.initialize(path=self.config.path, login=self.config.login, password=self.config.password, server=self.config.server):
            raise RuntimeError(f"MT5 initialisation failed: {mt5.last_error()}")
        self._connected = True

    def shutdown(self) -> None:
        """Shutdown the MT5 connection if it was opened."""
        if mt5 and self._connected:
            mt5.shutdown()
            self._connected = False

    def _require_connection(self) -> None:
        if not self._connected:
            raise RuntimeError("MT5DataFeed is not connected.  Call connect() before requesting data.")

    def _get_mt5_timeframe(self) -> int:
        """Map a timeframe string to the MetaTrader5 timeframe constant."""
        if mt5 is None:
            raise RuntimeError("MetaTrader5 package is not installed.")
        timeframe_map = {
            'M1': mt5.TIMEFRAME_M1,
            'M5': mt5.TIMEFRAME_M5,
            'M15': mt5.TIMEFRAME_M15,
            'M30': mt5.TIMEFRAME_M30,
            'H1': mt5.TIMEFRAME_H1,
            'H4': mt5.TIMEFRAME_H4,
            'D1': mt5.TIMEFRAME_D1,
        }
        tf = timeframe_map.get(self.timeframe.upper())
        if tf is None:
            raise ValueError(f"Unsupported timeframe for MT5: {self.timeframe}")
        return tf

    def fetch_bars(self, symbol: str, limit: int) -> pd.DataFrame:
        """Return the latest ``limit`` bars; the last row is the forming bar.

        Returns
        -------
        pandas.DataFrame
            Columns ``open``, ``high``, ``low``, ``close``, ``volume``,
            indexed by timezone-aware bar open time.
        """
        self._require_connection()
        rates = mt5.copy_rates_from_pos(symbol, self._get_mt5_timeframe(), 0, int(limit))
        if rates is None or len(rates) == 0:
            logger.warning("No rates returned for %s: %s", symbol, mt5.last_error())
            return pd.DataFrame(columns=['open', 'high', 'low', 'close', 'volume'])
        df = pd.DataFrame(rates)
        df['time'] = pd.to_datetime(df['time'], unit='s', utc=True)
        df = df.rename(columns={'tick_volume': 'volume'})
        df = df.set_index('time').sort_index()
        df.index = df.index.tz_convert(self.timezone)
        return df[['open', 'high', 'low', 'close', 'volume']].astype(float)

    def fetch_tick(self, symbol: str) -> Optional[float]:
        """Last price, or the bid/ask midpoint when the venue reports no last."""
        self._require_connection()
        tick = mt5.symbol_info_tick(symbol)
        if tick is None:
            return None
        last = float(getattr(tick, 'last', 0.0) or 0.0)
        if last > 0 and math.isfinite(last):
            return last
        bid, ask = float(tick.bid or 0.0), float(tick.ask or 0.0)
        if bid > 0 and ask > 0:
            return (bid + ask) / 2.0
        return None

    def instrument(self, symbol: str) -> Optional[Instrument]:
        self._require_connection()
        info = mt5.symbol_info(symbol)
        if info is None:
            return None
        return Instrument(qty_step=info.volume_step, min_qty=info.volume_min, price_precision=info.digits)
