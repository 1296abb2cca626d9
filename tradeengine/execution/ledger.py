"""
Equity ledger.

The ledger is the only writer of the account equity.  Partial exits
are recorded as they happen, but equity moves once per position: when
its remaining quantity reaches zero, the P&L of all its exit legs is
summed, applied under the account lock, and a single `ClosedTrade` and
`EquityPoint` are emitted.

Persistence is delegated to a `LedgerSink`.  The backtest and the
tests use `MemoryLedgerSink`; paper trading writes CSV files through
`tradeengine.utils.persistence.CSVLedgerSink`.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional, Sequence

from ..exceptions import PositionInvariantError
from .models import ClosedTrade, EquityPoint, ExitEvent, Position


logger = logging.getLogger(__name__)


class Account:
    """Running equity shared by every symbol, guarded by a lock."""

    def __init__(self, equity: float) -> None:
        self._equity = float(equity)
        self._lock = threading.Lock()

    @property
    def equity(self) -> float:
        with self._lock:
            return self._equity

    def apply_realized(self, pnl: float) -> float:
        """Add realized ``pnl`` and return the new equity."""
        with self._lock:
            self._equity += pnl
            return self._equity


class LedgerSink:
    """Append-only receiver of ledger records.  All hooks default to no-ops."""

    def on_entry(self, position: Position) -> None:
        pass

    def on_exit(self, event: ExitEvent) -> None:
        pass

    def on_trade(self, trade: ClosedTrade) -> None:
        pass

    def on_equity(self, point: EquityPoint) -> None:
        pass


class MemoryLedgerSink(LedgerSink):
    """Keep every record in lists."""

    def __init__(self) -> None:
        self.entries: List[Position] = []
        self.exits: List[ExitEvent] = []
        self.trades: List[ClosedTrade] = []
        self.equity_curve: List[EquityPoint] = []

    def on_entry(self, position: Position) -> None:
        self.entries.append(position)

    def on_exit(self, event: ExitEvent) -> None:
        self.exits.append(event)

    def on_trade(self, trade: ClosedTrade) -> None:
        self.trades.append(trade)

    def on_equity(self, point: EquityPoint) -> None:
        self.equity_curve.append(point)


def weighted_exit_price(events: Sequence[ExitEvent]) -> float:
    """Quantity-weighted average executed price of ``events``."""
    total_qty = sum(e.qty for e in events)
    if total_qty <= 0:
        return 0.0
    return sum(e.price * e.qty for e in events) / total_qty


class Ledger:
    """Record entries and exits and settle closed positions into the account."""

    def __init__(self, account: Account, sink: Optional[LedgerSink] = None) -> None:
        self.account = account
        self.sink = sink or LedgerSink()
        self._lock = threading.Lock()

    def record_entry(self, position: Position) -> None:
        self.sink.on_entry(position)

    def record_exits(self, position: Position, events: Sequence[ExitEvent]) -> Optional[ClosedTrade]:
        """Record new exit legs of ``position``.

        Returns the `ClosedTrade` when these events closed the position,
        otherwise ``None``.

        Raises
        ------
        PositionInvariantError
            If the position was already settled.
        """
        for event in events:
            self.sink.on_exit(event)
        if not position.is_closed:
            return None
        return self._settle(position)

    def _settle(self, position: Position) -> ClosedTrade:
        with self._lock:
            if position.settled:
                raise PositionInvariantError(position.pos_id, "position settled twice")
            position.settled = True

        closed_fraction = sum(e.fraction for e in position.exits)
        if abs(closed_fraction - 1.0) > 1e-6:
            raise PositionInvariantError(
                position.pos_id, f"exit fractions sum to {closed_fraction}, expected 1.0"
            )

        pnl = sum(e.pnl for e in position.exits)
        equity = self.account.apply_realized(pnl)
        last = position.exits[-1]
        trade = ClosedTrade(
            pos_id=position.pos_id,
            symbol=position.symbol,
            side=position.side,
            profile=position.profile,
            entry_price=position.entry,
            entry_exec=position.entry_exec,
            exit_avg=weighted_exit_price(position.exits),
            qty=position.qty_orig,
            pnl=pnl,
            labels='|'.join(e.label.value for e in position.exits),
            equity_after=equity,
            entry_time=position.opened_at,
            exit_time=last.timestamp,
        )
        logger.info(
            "Closed %s %s %s [%s] pnl=%.2f equity=%.2f",
            trade.symbol,
            trade.side,
            trade.pos_id,
            trade.labels,
            trade.pnl,
            equity,
        )
        self.sink.on_trade(trade)
        self.sink.on_equity(EquityPoint(timestamp=last.timestamp, equity=equity))
        return trade
