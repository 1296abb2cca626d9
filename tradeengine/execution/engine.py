"""
Trading engine façade.

`TradingEngine` ties the pieces together for one account: it sizes and
opens positions from trade plans, feeds completed bars and live ticks
through the `PositionStateMachine`, and writes every exit through the
`Ledger`.  It keeps at most one position per symbol and serialises all
work on a symbol behind that symbol's lock, so bar-close and tick
evaluation of the same position never overlap while different symbols
run in parallel.

`process_symbol` is the per-cycle entry point used by the paper and
live runners.  It always returns a `SymbolOutcome` describing what
happened (opened, exits, placed live, or a skip reason).
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
import pandas as pd

from ..config.schema import Config
from ..exceptions import PositionInvariantError
from ..strategy.exit_profile import ExitFeatures, choose_exit_profile, compute_features
from .fills import apply_slippage
from .ledger import Ledger
from .models import (
    Bar,
    ClosedTrade,
    ExitEvent,
    ExitLabel,
    ExitProfile,
    Instrument,
    LONG,
    Position,
    SHORT,
    TradePlan,
)
from .orders import OrderRouter, PlacedOrder
from .sizing import position_size
from .state_machine import PositionStateMachine


logger = logging.getLogger(__name__)

SignalFn = Callable[[pd.DataFrame, Dict[str, Any]], Tuple[Optional[TradePlan], str]]

SKIP_ALREADY_OPEN = 'already-open'
SKIP_ALREADY_PROCESSED = 'already-processed'
SKIP_INVALID_PLAN = 'invalid-plan'
SKIP_QTY_ZERO = 'qty-zero'
SKIP_NO_DATA = 'no-data'
SKIP_FETCH_STALLED = 'fetch-stalled'
SKIP_NO_SIGNAL = 'no-signal'
SKIP_POSITION_OPEN = 'position-open'
SKIP_NO_POSITION = 'no-position'
SKIP_INVARIANT = 'invariant-violation'


@dataclass
class OpenResult:
    """Result of `TradingEngine.open_position`: a position or a skip reason."""
    position: Optional[Position] = None
    skipped: Optional[str] = None


@dataclass
class SymbolOutcome:
    """What one processing cycle did for one symbol."""
    symbol: str
    opened: Optional[Position] = None
    exits: List[ExitEvent] = field(default_factory=list)
    closed: Optional[ClosedTrade] = None
    placed: Optional[PlacedOrder] = None
    skipped: Optional[str] = None

    @property
    def kind(self) -> str:
        if self.placed is not None:
            return 'placed'
        if self.opened is not None:
            return 'opened'
        if self.exits:
            return 'exited'
        return 'skipped'


def new_position_id(symbol: str, ts: Optional[pd.Timestamp] = None) -> str:
    stamp = pd.Timestamp(ts) if ts is not None else pd.Timestamp.now(tz='UTC')
    return f"P-{symbol}-{int(stamp.value // 1_000_000)}-{uuid.uuid4().hex[:6]}"


def _plan_is_valid(plan: TradePlan) -> bool:
    """A plan needs a known side and a stop on the losing side of the entry."""
    if plan.side == LONG:
        return plan.stop < plan.entry
    if plan.side == SHORT:
        return plan.stop > plan.entry
    return False


class TradingEngine:
    """Open, evaluate and settle positions for one account.

    Parameters
    ----------
    config : Config
        Risk, slippage, exit and strategy settings.
    ledger : Ledger
        Receives every entry and exit; owns the account equity.
    router : OrderRouter, optional
        Broker connection.  When given together with ``live=True``,
        signals are sent as bracket orders instead of simulated.
    live : bool
        Place real orders rather than simulating positions.
    """

    def __init__(
        self,
        config: Config,
        ledger: Ledger,
        router: Optional[OrderRouter] = None,
        live: bool = False,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.router = router
        self.live = live
        self.state_machine = PositionStateMachine(config.exits, config.slippage_bps)
        self.instruments: Dict[str, Instrument] = {
            sym: cfg.to_instrument() for sym, cfg in config.instruments.items()
        }
        self.positions: Dict[str, Position] = {}
        self.last_processed: Dict[str, pd.Timestamp] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        if live and router is None:
            raise ValueError("Live trading requires an order router")

    @property
    def equity(self) -> float:
        return self.ledger.account.equity

    def symbol_lock(self, symbol: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(symbol)
            if lock is None:
                lock = self._locks[symbol] = threading.RLock()
            return lock

    def open_symbols(self) -> List[str]:
        return [sym for sym, pos in self.positions.items() if not pos.halted]

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------
    def select_profile(self, plan: TradePlan, features: Optional[ExitFeatures] = None) -> ExitProfile:
        mode = plan.exit_profile or self.config.exits.mode
        return choose_exit_profile(
            features or ExitFeatures(),
            plan.side,
            mode=mode,
            strategy_id=self.config.strategy.id,
            profile_map=self.config.exits.profile_map,
        )

    def open_position(
        self,
        symbol: str,
        plan: TradePlan,
        risk_fraction: Optional[float] = None,
        slippage_bps: Optional[float] = None,
        ts: Optional[pd.Timestamp] = None,
        features: Optional[ExitFeatures] = None,
        instrument: Optional[Instrument] = None,
    ) -> OpenResult:
        """Size, fill and register a new position for ``symbol``.

        Returns an `OpenResult` whose ``skipped`` is ``'already-open'``,
        ``'invalid-plan'`` or ``'qty-zero'`` when nothing was opened.
        """
        risk_fraction = self.config.risk_pct if risk_fraction is None else risk_fraction
        slippage_bps = self.config.slippage_bps if slippage_bps is None else slippage_bps
        with self.symbol_lock(symbol):
            if symbol in self.positions:
                return OpenResult(skipped=SKIP_ALREADY_OPEN)
            if not _plan_is_valid(plan):
                logger.warning("%s: rejecting plan with side=%s risk=%s", symbol, plan.side, plan.risk)
                return OpenResult(skipped=SKIP_INVALID_PLAN)

            instrument = instrument or self.instruments.get(symbol)
            qty = position_size(self.equity, risk_fraction, plan.entry, plan.stop, instrument)
            if qty <= 0:
                logger.info("%s: position size rounds to zero, skipping", symbol)
                return OpenResult(skipped=SKIP_QTY_ZERO)

            opened_at = pd.Timestamp(ts) if ts is not None else pd.Timestamp.now(tz='UTC')
            atr_value = plan.atr if plan.atr and plan.atr > 0 else plan.risk
            position = Position(
                pos_id=new_position_id(symbol, opened_at),
                symbol=symbol,
                side=plan.side,
                qty_orig=qty,
                qty=qty,
                entry=plan.entry,
                entry_exec=apply_slippage(plan.entry, plan.side, slippage_bps, for_entry=True),
                stop=plan.stop,
                initial_stop=plan.stop,
                tp1=plan.tp1,
                tp2=plan.tp2,
                target=plan.tp1,
                profile=self.select_profile(plan, features),
                atr=atr_value,
                opened_at=opened_at,
                range_height=plan.range_height,
            )
            self.state_machine.init_levels(position)
            self.positions[symbol] = position
            self.ledger.record_entry(position)
            logger.info(
                "Opened %s %s %s qty=%.6f entry=%.6f stop=%.6f target=%.6f profile=%s",
                symbol,
                position.side,
                position.pos_id,
                qty,
                position.entry_exec,
                position.stop,
                position.target,
                position.profile.value,
            )
            return OpenResult(position=position)

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------
    def _apply(
        self,
        position: Position,
        step: Callable[[], List[ExitEvent]],
    ) -> Tuple[List[ExitEvent], Optional[ClosedTrade]]:
        """Run one state-machine step and settle its events.

        A `PositionInvariantError` halts the position (it is never
        evaluated again) and is re-raised to the caller.
        """
        try:
            events = step()
            closed = self.ledger.record_exits(position, events)
        except PositionInvariantError:
            position.halted = True
            logger.critical("Halting position %s on %s", position.pos_id, position.symbol, exc_info=True)
            raise
        if closed is not None and self.positions.get(position.symbol) is position:
            del self.positions[position.symbol]
        return events, closed

    def evaluate_bar_close(self, position: Position, bar: Bar) -> List[ExitEvent]:
        """Evaluate a completed bar for ``position``."""
        with self.symbol_lock(position.symbol):
            events, _ = self._apply(position, lambda: self.state_machine.evaluate_bar_close(position, bar))
            return events

    def evaluate_tick(self, position: Position, price: float, ts: pd.Timestamp) -> List[ExitEvent]:
        """Evaluate a live price for ``position``."""
        with self.symbol_lock(position.symbol):
            events, _ = self._apply(position, lambda: self.state_machine.evaluate_tick(position, price, ts))
            return events

    def on_tick(self, symbol: str, price: Optional[float], ts: pd.Timestamp) -> SymbolOutcome:
        """Tick entry point of the real-time loop, keyed by symbol."""
        with self.symbol_lock(symbol):
            position = self.positions.get(symbol)
            if position is None:
                return SymbolOutcome(symbol, skipped=SKIP_NO_POSITION)
            if price is None:
                return SymbolOutcome(symbol, skipped=SKIP_NO_DATA)
            try:
                events, closed = self._apply(
                    position, lambda: self.state_machine.evaluate_tick(position, price, ts)
                )
            except PositionInvariantError:
                return SymbolOutcome(symbol, skipped=SKIP_INVARIANT)
            return SymbolOutcome(symbol, exits=events, closed=closed,
                                 skipped=None if events else SKIP_POSITION_OPEN)

    def force_close(
        self,
        position: Position,
        price: float,
        ts: pd.Timestamp,
        label: ExitLabel = ExitLabel.MKT_EOD,
    ) -> Tuple[List[ExitEvent], Optional[ClosedTrade]]:
        """Close the remainder of ``position`` at ``price``."""
        with self.symbol_lock(position.symbol):
            return self._apply(position, lambda: self.state_machine.force_close(position, price, ts, label))

    # ------------------------------------------------------------------
    # Per-symbol cycle
    # ------------------------------------------------------------------
    def process_symbol(
        self,
        symbol: str,
        bars: Optional[pd.DataFrame],
        signal_fn: SignalFn,
        params: Optional[Dict[str, Any]] = None,
    ) -> SymbolOutcome:
        """Run one bar-close cycle for ``symbol``.

        ``bars`` must contain completed bars only; the last row is the
        bar being processed.  An open position is evaluated against that
        bar first.  If the symbol is flat afterwards, the signal function
        is consulted and a new position is opened (or, in live mode, a
        bracket order is placed).
        """
        with self.symbol_lock(symbol):
            if bars is None or bars.empty:
                return SymbolOutcome(symbol, skipped=SKIP_NO_DATA)
            bar_ts = bars.index[-1]
            if self.last_processed.get(symbol) == bar_ts:
                return SymbolOutcome(symbol, skipped=SKIP_ALREADY_PROCESSED)
            self.last_processed[symbol] = bar_ts

            outcome = SymbolOutcome(symbol)
            position = self.positions.get(symbol)
            if position is not None:
                if position.halted:
                    outcome.skipped = SKIP_INVARIANT
                    return outcome
                bar = Bar.from_row(bar_ts, bars.iloc[-1])
                try:
                    outcome.exits, outcome.closed = self._apply(
                        position, lambda: self.state_machine.evaluate_bar_close(position, bar)
                    )
                except PositionInvariantError:
                    outcome.skipped = SKIP_INVARIANT
                    return outcome
                if outcome.closed is None:
                    if not outcome.exits:
                        outcome.skipped = SKIP_POSITION_OPEN
                    return outcome

            plan, reason = signal_fn(bars, params or {})
            if plan is None:
                if not outcome.exits:
                    outcome.skipped = reason or SKIP_NO_SIGNAL
                return outcome

            if self.live:
                return self._place_live(symbol, plan, outcome)

            features = compute_features(
                bars,
                atr_len=self.config.strategy.atr_len,
                channel_len=self.config.strategy.channel_len,
                vol_len=self.config.strategy.vol_len,
            )

            result = self.open_position(symbol, plan, ts=bar_ts, features=features)
            outcome.opened = result.position
            if result.skipped and not outcome.exits:
                outcome.skipped = result.skipped
            return outcome

    def _place_live(self, symbol: str, plan: TradePlan, outcome: SymbolOutcome) -> SymbolOutcome:
        router = self.router
        if router.has_open_position(symbol):
            outcome.skipped = SKIP_ALREADY_OPEN
            return outcome
        if not _plan_is_valid(plan):
            outcome.skipped = SKIP_INVALID_PLAN
            return outcome
        equity = router.fetch_equity()
        qty = position_size(equity, self.config.risk_pct, plan.entry, plan.stop, self.instruments.get(symbol))
        if qty <= 0:
            outcome.skipped = SKIP_QTY_ZERO
            return outcome
        outcome.placed = router.place_bracket(symbol, plan, qty)
        logger.info("Placed live %s %s qty=%.6f stop=%.6f tp=%.6f", symbol, plan.side, qty, plan.stop, plan.tp1)
        return outcome
