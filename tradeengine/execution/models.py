"""
Plan, position, exit and trade models.

These dataclasses represent the objects passed between the signal
function, the position state machine and the ledger.  Keeping them in
a separate module lets every layer (engine, backtest, persistence,
reporting) share one vocabulary without importing each other.

Sides are plain strings (``'long'`` or ``'short'``).  Exit profiles,
exit labels and position status are closed enumerations so that the
state machine can check it handles every member.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
import pandas as pd


LONG = 'long'
SHORT = 'short'


def side_sign(side: str) -> int:
    """Return ``+1`` for long and ``-1`` for short positions."""
    if side == LONG:
        return 1
    if side == SHORT:
        return -1
    raise ValueError(f"Unknown side: {side!r}")


class ExitProfile(str, Enum):
    """Exit regime selected once when a position is opened."""

    PULLBACK_TWO_STEP = 'pullback_two_step'
    TREND_TRAIL = 'trend_trail'
    BREAKOUT_MM = 'breakout_mm'
    MEAN_REVERT = 'mean_revert'


class ExitLabel(str, Enum):
    """Vocabulary used to tag each exit leg."""

    SL = 'SL'
    TP1 = 'TP1'
    TP2 = 'TP2'
    TP = 'TP'
    BE = 'BE'
    TIME = 'TIME'
    TRAIL = 'TRAIL'
    MKT_EOD = 'MKT_EOD'


class PositionStatus(str, Enum):
    OPEN = 'OPEN'
    PARTIAL = 'PARTIAL'
    CLOSED = 'CLOSED'


@dataclass
class Bar:
    """One completed OHLCV bar."""
    timestamp: pd.Timestamp
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @classmethod
    def from_row(cls, timestamp: pd.Timestamp, row: pd.Series) -> "Bar":
        return cls(
            timestamp=timestamp,
            open=float(row['open']),
            high=float(row['high']),
            low=float(row['low']),
            close=float(row['close']),
            volume=float(row.get('volume', 0.0) or 0.0),
        )


@dataclass(frozen=True)
class TradePlan:
    """Entry proposal produced by a signal function.

    Attributes
    ----------
    side : str
        ``'long'`` or ``'short'``.
    entry, stop : float
        Planned entry and protective stop prices.
    tp1 : float
        First take-profit level.
    tp2 : float, optional
        Second take-profit level, used by the two-step pullback profile.
    exit_profile : str, optional
        Caller-specified exit regime; overrides the configured
        selection mode when set.
    atr, range_height, ref_price : float, optional
        Auxiliary values measured on the signal bar.
    """

    side: str
    entry: float
    stop: float
    tp1: float
    tp2: Optional[float] = None
    exit_profile: Optional[str] = None
    atr: Optional[float] = None
    range_height: Optional[float] = None
    ref_price: Optional[float] = None
    reason: str = ''

    @property
    def risk(self) -> float:
        return abs(self.entry - self.stop)


@dataclass
class Instrument:
    """Quantity and price constraints of a tradable symbol.

    Any field may be ``None`` when the venue does not publish it.
    """
    qty_step: Optional[float] = None
    min_qty: Optional[float] = None
    price_precision: Optional[int] = None


@dataclass
class ExitEvent:
    """A single closing leg of a position."""
    pos_id: str
    symbol: str
    side: str
    label: ExitLabel
    fraction: float
    qty: float
    price: float
    pnl: float
    timestamp: pd.Timestamp


@dataclass
class Position:
    """An open (or just closed) position owned by the engine."""
    pos_id: str
    symbol: str
    side: str
    qty_orig: float
    qty: float
    entry: float
    entry_exec: float
    stop: float
    initial_stop: float
    tp1: float
    tp2: Optional[float]
    target: float
    profile: ExitProfile
    atr: float
    opened_at: pd.Timestamp
    range_height: Optional[float] = None
    tp1_hit: bool = False
    bars_held: int = 0
    extreme_close: Optional[float] = None
    best_price: Optional[float] = None
    closed_fraction: float = 0.0
    halted: bool = False
    settled: bool = False
    exits: List[ExitEvent] = field(default_factory=list)

    @property
    def risk(self) -> float:
        """Initial risk unit (R) measured on the planned prices."""
        return abs(self.entry - self.initial_stop)

    @property
    def status(self) -> PositionStatus:
        if self.qty <= 0:
            return PositionStatus.CLOSED
        # Any exit or stop move so far leaves the position part-way through its plan.
        if self.exits or self.tp1_hit or self.stop != self.initial_stop:
            return PositionStatus.PARTIAL
        return PositionStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status is PositionStatus.CLOSED


@dataclass
class ClosedTrade:
    """Summary of a fully closed position."""
    pos_id: str
    symbol: str
    side: str
    profile: ExitProfile
    entry_price: float
    entry_exec: float
    exit_avg: float
    qty: float
    pnl: float
    labels: str
    equity_after: float
    entry_time: pd.Timestamp
    exit_time: pd.Timestamp

    @property
    def return_pct(self) -> float:
        """Realized P&L relative to the equity held before the close."""
        before = self.equity_after - self.pnl
        return self.pnl / before if before else 0.0


@dataclass
class EquityPoint:
    """Represents the account equity at a given timestamp."""
    timestamp: pd.Timestamp
    equity: float
