"""
Backtest execution engine.

`run_backtest` replays one symbol's bar history through the same
`TradingEngine` used for paper trading, with a private account and an
in-memory ledger.  Only one position is in flight at a time: on every
bar an open position is evaluated first, and when the symbol is flat
the signal function is asked for a plan on the data seen so far.  A
position still open when the data ends is closed at the last close
with label ``MKT_EOD``.

`BacktestEngine` runs `run_backtest` for every configured symbol,
loading bars from CSV files.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import pandas as pd

from ..config.schema import Config
from ..data.csv_data import CSVDataLoader
from ..reporting.metrics import compute_metrics
from ..strategy.atr_breakout import atr_breakout_signal, default_params
from ..strategy.exit_profile import compute_features
from .engine import SignalFn, TradingEngine
from .ledger import Account, Ledger, MemoryLedgerSink
from .models import Bar, ClosedTrade, EquityPoint, ExitEvent, ExitLabel, Instrument


logger = logging.getLogger(__name__)


@dataclass
class BacktestResult:
    """Trades, exit legs, equity curve and summary of one backtest."""
    trades: List[ClosedTrade] = field(default_factory=list)
    exits: List[ExitEvent] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)


def run_backtest(
    bars: pd.DataFrame,
    signal_fn: SignalFn,
    config: Config,
    instrument: Optional[Instrument] = None,
    params: Optional[Dict[str, Any]] = None,
    symbol: str = "SYMBOL",
    initial_equity: Optional[float] = None,
) -> BacktestResult:
    """Simulate ``signal_fn`` over ``bars`` for a single symbol.

    Parameters
    ----------
    bars : pandas.DataFrame
        Completed bars, oldest first, with ``open``, ``high``, ``low``,
        ``close`` and optionally ``volume``.
    signal_fn : callable
        ``(bars_so_far, params) -> (TradePlan or None, reason)``.
    config : Config
        Risk, slippage and exit settings.
    instrument : Instrument, optional
        Quantity step and minimum.
    params : dict, optional
        Passed through to ``signal_fn``.
    symbol : str
        Label used in ids and records.
    initial_equity : float, optional
        Defaults to ``config.initial_equity``.

    Returns
    -------
    BacktestResult
    """
    start_equity = config.initial_equity if initial_equity is None else initial_equity
    sink = MemoryLedgerSink()
    engine = TradingEngine(config, Ledger(Account(start_equity), sink))
    params = params or {}
    result = BacktestResult()
    if bars is None or bars.empty:
        result.summary = compute_metrics([], [])
        return result

    sink.on_equity(EquityPoint(timestamp=bars.index[0], equity=start_equity))
    last_index = len(bars) - 1
    for i in range(len(bars)):
        ts = bars.index[i]
        position = engine.positions.get(symbol)
        if position is not None:
            engine.evaluate_bar_close(position, Bar.from_row(ts, bars.iloc[i]))
        if symbol in engine.positions or i == last_index:
            continue

        history = bars.iloc[: i + 1]
        plan, _ = signal_fn(history, params)
        if plan is None:
            continue
        features = compute_features(
            history,
            atr_len=config.strategy.atr_len,
            channel_len=config.strategy.channel_len,
            vol_len=config.strategy.vol_len,
        )
        opened = engine.open_position(symbol, plan, ts=ts, features=features, instrument=instrument)
        if opened.skipped:
            logger.debug("%s %s: entry skipped (%s)", symbol, ts, opened.skipped)

    position = engine.positions.get(symbol)
    if position is not None:
        engine.force_close(position, float(bars['close'].iloc[-1]), bars.index[-1], ExitLabel.MKT_EOD)

    result.trades = list(sink.trades)
    result.exits = list(sink.exits)
    result.equity_curve = list(sink.equity_curve)
    result.summary = compute_metrics(result.trades, result.equity_curve, bars.index[0], bars.index[-1])
    result.summary['symbol'] = symbol
    result.summary['slippage_bps'] = config.slippage_bps
    logger.info(
        "Backtest %s: %d trades, net P&L %.2f",
        symbol,
        result.summary['trades'],
        result.summary['net_pnl'],
    )
    return result


class BacktestEngine:
    """Run backtests on historical data loaded from CSV files."""

    def __init__(self, config: Config, signal_fn: Optional[SignalFn] = None) -> None:
        self.config = config
        self.signal_fn = signal_fn or atr_breakout_signal
        self.data_loader = CSVDataLoader(config.data.csv_dir, config.data.timezone)

    def run(self) -> Dict[str, BacktestResult]:
        """Execute the backtest across all configured symbols.

        Each symbol starts from ``config.initial_equity``.  Symbols whose
        data file is missing or unreadable are logged and skipped.

        Returns
        -------
        dict
            Symbol to `BacktestResult`.
        """
        results: Dict[str, BacktestResult] = {}
        params = default_params(self.config.strategy)
        for symbol in self.config.symbols:
            try:
                bars = self.data_loader.load(symbol)
            except (FileNotFoundError, ValueError) as exc:
                logger.error("Skipping %s: %s", symbol, exc)
                continue
            results[symbol] = run_backtest(
                bars,
                self.signal_fn,
                self.config,
                instrument=self.config.instrument(symbol),
                params=params,
                symbol=symbol,
            )
        return results
