"""
MetaTrader 5 execution engine.

This module runs the strategy against a live price feed in paper or
live mode.  Every bar-close cycle fetches recent bars for all symbols
concurrently (bounded by ``runtime.concurrency``, each fetch retried
with exponential backoff) and hands the completed bars to
`TradingEngine.process_symbol`.  In paper mode positions are simulated
and recorded through a CSV ledger; in live mode signals are sent to
the broker as bracket orders via `MT5OrderRouter`.

Paper mode can additionally run a real-time watcher that polls the
last price of every symbol with an open position and evaluates it as
a tick.  A failing price fetch skips that symbol for the current cycle
only.  A stalled fetch is reported as ``fetch-stalled`` and that symbol
is not fetched again until the earlier call returns; other symbols
keep their workers.  Bar-close cycles are bounded the same way.

State (open positions, equity, last processed bar) is persisted to
disk after each cycle so that the bot can resume after restarts
without duplicating trades.

**Note**: Running against a terminal requires the `MetaTrader5`
package and a locally installed MT5 terminal.  Tests inject their own
`PriceSource` and never touch MT5.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from ..config.schema import Config
from ..data.mt5_data import MT5DataFeed, mt5
from ..data.price_source import PriceSource
from ..strategy.atr_breakout import atr_breakout_signal, default_params
from ..utils.persistence import CSVLedgerSink, load_state, position_from_dict, position_to_dict, save_state
from ..utils.timeutils import parse_timestamp, utc_now
from .concurrency import BoundedFanOut, retry_call
from .engine import SKIP_FETCH_STALLED, SKIP_NO_DATA, SignalFn, SymbolOutcome, TradingEngine
from .ledger import Account, Ledger, LedgerSink
from .models import LONG, TradePlan
from .orders import OrderRouter, PlacedOrder


logger = logging.getLogger(__name__)


class MT5OrderRouter(OrderRouter):
    """Send bracket market orders through the MetaTrader 5 terminal."""

    def __init__(self, deviation: int = 20, magic: int = 0, comment: str = "tradeengine") -> None:
        if mt5 is None:
            raise RuntimeError("MetaTrader5 package is not installed.")
        self.deviation = deviation
        self.magic = magic
        self.comment = comment

    def fetch_equity(self) -> float:
        info = mt5.account_info()
        if info is None:
            raise RuntimeError(f"MT5 account_info failed: {mt5.last_error()}")
        return float(info.equity)

    def has_open_position(self, symbol: str) -> bool:
        positions = mt5.positions_get(symbol=symbol)
        return bool(positions)

    def place_bracket(self, symbol: str, plan: TradePlan, qty: float) -> PlacedOrder:
        info = mt5.symbol_info(symbol)
        tick = mt5.symbol_info_tick(symbol)
        if info is None or tick is None:
            raise RuntimeError(f"No symbol data for {symbol}: {mt5.last_error()}")
        digits = int(info.digits)
        is_long = plan.side == LONG
        request: Dict[str, Any] = {
            'action': mt5.TRADE_ACTION_DEAL,
            'symbol': symbol,
            'volume': float(qty),
            'type': mt5.ORDER_TYPE_BUY if is_long else mt5.ORDER_TYPE_SELL,
            'price': tick.ask if is_long else tick.bid,
            'sl': round(plan.stop, digits),
            'tp': round(plan.tp1, digits),
            'deviation': self.deviation,
            'magic': self.magic,
            'comment': self.comment,
            'type_time': mt5.ORDER_TIME_GTC,
            'type_filling': mt5.ORDER_FILLING_IOC,
        }
        result = mt5.order_send(request)
        if result is None or result.retcode != mt5.TRADE_RETCODE_DONE:
            code = None if result is None else result.retcode
            raise RuntimeError(f"order_send failed for {symbol} (retcode={code}): {mt5.last_error()}")
        return PlacedOrder(symbol=symbol, side=plan.side, qty=float(qty), order_id=str(result.order), price=float(result.price))


class MT5Engine:
    """Run the trading strategy in paper or live mode.

    Parameters
    ----------
    config : Config
        Full configuration.
    live : bool
        Place real orders instead of simulating positions.
    price_source : PriceSource, optional
        Market data.  Defaults to an `MT5DataFeed` that is connected in
        `run`.
    router : OrderRouter, optional
        Broker connection for live mode.  Defaults to `MT5OrderRouter`.
    sink : LedgerSink, optional
        Ledger persistence.  Defaults to CSV files in ``runtime.ledger_dir``.
    signal_fn : callable, optional
        Signal function, defaults to the ATR breakout.
    """

    def __init__(
        self,
        config: Config,
        live: bool = False,
        price_source: Optional[PriceSource] = None,
        router: Optional[OrderRouter] = None,
        sink: Optional[LedgerSink] = None,
        signal_fn: Optional[SignalFn] = None,
    ) -> None:
        if live and not config.runtime.trade_enabled:
            raise RuntimeError("Live mode requires runtime.trade_enabled: true in the configuration")
        self.config = config
        self.live = live
        self.state_file = config.runtime.state_file
        self._owns_feed = price_source is None
        self.price_source = price_source or MT5DataFeed(config.mt5, config.data.timezone, config.timeframe)
        if live and router is None:
            router = MT5OrderRouter(deviation=config.mt5.deviation, magic=config.mt5.magic)
        self.signal_fn = signal_fn or atr_breakout_signal
        self.params = default_params(config.strategy)

        persisted = load_state(self.state_file) or {}
        equity = persisted.get('equity')
        account = Account(config.initial_equity if equity is None else float(equity))
        self.engine = TradingEngine(
            config,
            Ledger(account, sink or CSVLedgerSink(config.runtime.ledger_dir)),
            router=router,
            live=live,
        )
        self._restore_state(persisted)
        self._stop = threading.Event()

        runtime = config.runtime
        # A bar cycle covers every fetch attempt plus the backoff between them.
        bar_timeout = runtime.fetch_timeout_sec * (runtime.retries + 1) + runtime.retry_base_delay * (
            2 ** runtime.retries - 1
        )
        self._bar_fanout = BoundedFanOut(runtime.concurrency, bar_timeout, name="bars")
        # One worker per symbol, so a stalled symbol cannot starve the others.
        self._tick_fanout = BoundedFanOut(
            max(runtime.concurrency, len(config.symbols)), runtime.fetch_timeout_sec, name="ticks"
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def _restore_state(self, persisted: Dict[str, Any]) -> None:
        if not persisted:
            return
        for sym, data in (persisted.get('positions') or {}).items():
            if data is not None:
                self.engine.positions[sym] = position_from_dict(data)
        for sym, ts in (persisted.get('last_processed') or {}).items():
            parsed = parse_timestamp(ts)
            if parsed is not None:
                self.engine.last_processed[sym] = parsed
        logger.info(
            "Restored state: equity=%.2f, %d open position(s)",
            self.engine.equity,
            len(self.engine.positions),
        )

    def _persist_state(self) -> None:
        """Save positions, equity and last processed bars to disk."""
        positions = dict(self.engine.positions)
        state = {
            'equity': self.engine.equity,
            'positions': {sym: position_to_dict(pos) for sym, pos in positions.items()},
            'last_processed': {sym: ts.isoformat() for sym, ts in self.engine.last_processed.items()},
            'saved_at': utc_now().isoformat(),
        }
        save_state(self.state_file, state)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------
    def _process_one(self, symbol: str) -> SymbolOutcome:
        runtime = self.config.runtime
        bars = retry_call(
            lambda: self.price_source.fetch_bars(symbol, runtime.bars_limit + 1),
            retries=runtime.retries,
            base_delay=runtime.retry_base_delay,
            description=f"fetch_bars({symbol})",
        )
        if symbol not in self.engine.instruments:
            instrument = self.price_source.instrument(symbol)
            if instrument is not None:
                self.engine.instruments[symbol] = instrument
        # The last row is the bar still forming.
        closed = bars.iloc[:-1] if bars is not None and len(bars) > 1 else None
        return self.engine.process_symbol(symbol, closed, self.signal_fn, self.params)

    def run_bar_cycle(self) -> Dict[str, SymbolOutcome]:
        """Process every configured symbol once and persist the state."""
        cycle = self._bar_fanout.run(self.config.symbols, self._process_one)
        outcomes: Dict[str, SymbolOutcome] = {}
        for symbol in self.config.symbols:
            if symbol in cycle.results:
                result = cycle.results[symbol]
            elif symbol in cycle.errors:
                result = SymbolOutcome(symbol, skipped=f"error: {cycle.errors[symbol]}")
            else:
                result = SymbolOutcome(symbol, skipped=SKIP_FETCH_STALLED)
            outcomes[symbol] = result
            logger.info("%s: %s%s", symbol, result.kind, f" ({result.skipped})" if result.skipped else "")
        self._persist_state()
        return outcomes

    def run_tick_cycle(self) -> Dict[str, SymbolOutcome]:
        """Evaluate one live price for each symbol with an open position."""
        symbols = self.engine.open_symbols()
        cycle = self._tick_fanout.run(symbols, self.price_source.fetch_tick)
        now = utc_now()
        outcomes: Dict[str, SymbolOutcome] = {}
        for symbol in symbols:
            if symbol in cycle.stalled:
                outcomes[symbol] = SymbolOutcome(symbol, skipped=SKIP_FETCH_STALLED)
                continue
            price = cycle.results.get(symbol)
            if price is None:
                outcomes[symbol] = SymbolOutcome(symbol, skipped=SKIP_NO_DATA)
                continue
            outcomes[symbol] = self.engine.on_tick(symbol, price, now)
        if any(o.exits for o in outcomes.values()):
            self._persist_state()
        return outcomes

    def run_realtime(self) -> None:
        """Poll ticks until `stop` is called."""
        runtime = self.config.runtime
        logger.info("Real-time watcher started (every %.1fs)", runtime.tick_poll_sec)
        while not self._stop.is_set():
            self.run_tick_cycle()
            self._stop.wait(runtime.tick_poll_sec)

    def stop(self) -> None:
        self._stop.set()

    def close(self) -> None:
        """Release the worker pools; stalled fetches are abandoned."""
        self._bar_fanout.shutdown()
        self._tick_fanout.shutdown()

    def run(self, realtime_only: bool = False) -> None:
        """Main loop for paper/live trading.

        Runs bar-close cycles every ``runtime.bar_poll_sec`` seconds (and,
        in paper mode with ``runtime.paper_realtime``, the tick watcher
        in a background thread).  Press Ctrl+C to stop.  On termination,
        the current state is saved to disk.
        """
        logger.info("Starting MT5 engine (live=%s)", self.live)
        if self._owns_feed:
            try:
                self.price_source.connect()
            except RuntimeError as exc:
                logger.error("Failed to connect to MetaTrader 5: %s", exc)
                return
        watcher: Optional[threading.Thread] = None
        try:
            if realtime_only:
                self.run_realtime()
                return
            if self.config.runtime.paper_realtime and not self.live:
                watcher = threading.Thread(target=self.run_realtime, name="realtime-watcher", daemon=True)
                watcher.start()
            while not self._stop.is_set():
                self.run_bar_cycle()
                self._stop.wait(self.config.runtime.bar_poll_sec)
        except KeyboardInterrupt:
            logger.info("Shutting down MT5 engine...")
        finally:
            self.stop()
            if watcher is not None:
                watcher.join(timeout=self.config.runtime.fetch_timeout_sec)
            if self._owns_feed:
                self.price_source.shutdown()
            self._persist_state()
            self.close()
