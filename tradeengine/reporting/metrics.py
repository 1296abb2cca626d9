"""
Performance metrics calculations.

Pure functions over a finished trade list and equity series.  They are
used by the backtest summary and by the report generator, and can be
applied to the paper-trading ledger just as well.

Annualisation note: Sharpe and Sortino are computed on per-trade
returns and scaled by ``sqrt(max(1, trades_per_year))``.  This keeps
results comparable with earlier reports but is an approximation; it
is not the same as annualising a resampled periodic return series.
"""

from __future__ import annotations

from collections import Counter
from typing import Iterable, List, Optional, Sequence
import math
import pandas as pd

from ..execution.models import ClosedTrade, EquityPoint


MIN_YEARS = 1.0 / 365.0
SECONDS_PER_YEAR = 365 * 24 * 3600


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _pstdev(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    m = _mean(values)
    return math.sqrt(_mean([(v - m) ** 2 for v in values]))


def win_rate(trades: Sequence[ClosedTrade]) -> float:
    """Fraction of trades with positive P&L."""
    if not trades:
        return 0.0
    return sum(1 for t in trades if t.pnl > 0) / len(trades)


def profit_factor(pnls: Iterable[float]) -> float:
    """Gross gains divided by gross losses.

    Returns ``inf`` when there are gains but no losses and ``0.0`` when
    there are neither.
    """
    pnls = list(pnls)
    gains = sum(p for p in pnls if p > 0)
    losses = -sum(p for p in pnls if p < 0)
    if losses > 0:
        return gains / losses
    return math.inf if gains > 0 else 0.0


def max_drawdown(equity: Iterable[float]) -> float:
    """Largest drop from a running peak, in currency units."""
    peak = -math.inf
    worst = 0.0
    for value in equity:
        peak = max(peak, value)
        worst = max(worst, peak - value)
    return worst


def max_drawdown_pct(equity: Iterable[float]) -> float:
    """Largest drop from a running peak as a fraction of that peak."""
    peak = -math.inf
    worst = 0.0
    for value in equity:
        peak = max(peak, value)
        if peak > 0:
            worst = max(worst, (peak - value) / peak)
    return worst


def trade_returns(trades: Sequence[ClosedTrade]) -> List[float]:
    """Per-trade return as a decimal of the equity held before the trade."""
    return [t.return_pct for t in trades]


def period_years(start: pd.Timestamp, end: pd.Timestamp) -> float:
    """Length of ``[start, end]`` in years, floored at one day."""
    seconds = (pd.Timestamp(end) - pd.Timestamp(start)).total_seconds()
    return max(MIN_YEARS, seconds / SECONDS_PER_YEAR)


def trades_per_year(num_trades: int, years: float) -> float:
    return num_trades / years if num_trades > 0 and years > 0 else 0.0


def sharpe_annualized(returns: Sequence[float], per_year: float) -> float:
    """Mean over population standard deviation, scaled by ``sqrt(max(1, per_year))``."""
    sd = _pstdev(returns)
    if sd <= 0:
        return 0.0
    return _mean(returns) / sd * math.sqrt(max(1.0, per_year))


def downside_deviation(returns: Sequence[float], mar: float = 0.0) -> float:
    if not returns:
        return 0.0
    return math.sqrt(_mean([min(0.0, r - mar) ** 2 for r in returns]))


def sortino_annualized(returns: Sequence[float], per_year: float, mar: float = 0.0) -> float:
    """Like `sharpe_annualized` but divides by the downside deviation."""
    dd = downside_deviation(returns, mar)
    if dd <= 0:
        return 0.0
    return _mean(returns) / dd * math.sqrt(max(1.0, per_year))


def cagr(start_equity: float, end_equity: float, years: float) -> float:
    """Compound annual growth rate with ``years`` floored at one day."""
    years = max(MIN_YEARS, years)
    ratio = max(1e-9, end_equity / max(1e-9, start_equity))
    try:
        return ratio ** (1.0 / years) - 1.0
    except OverflowError:
        return math.inf


def compute_metrics(
    trades: List[ClosedTrade],
    equity_curve: List[EquityPoint],
    start: Optional[pd.Timestamp] = None,
    end: Optional[pd.Timestamp] = None,
) -> dict:
    """Compute a set of summary statistics.

    Parameters
    ----------
    trades : list of ClosedTrade
        Completed trades in chronological order.
    equity_curve : list of EquityPoint
        Starting equity followed by the equity after each trade.
    start, end : pandas.Timestamp, optional
        Period covered by the run.  Defaults to the first and last
        equity timestamps.

    Returns
    -------
    dict
        Dictionary of performance metrics.
    """
    equity = [pt.equity for pt in equity_curve]
    start_equity = equity[0] if equity else 0.0
    end_equity = equity[-1] if equity else 0.0
    if start is None and equity_curve:
        start = equity_curve[0].timestamp
    if end is None and equity_curve:
        end = equity_curve[-1].timestamp
    years = period_years(start, end) if start is not None and end is not None else MIN_YEARS

    returns = trade_returns(trades)
    per_year = trades_per_year(len(trades), years)
    wins = sum(1 for t in trades if t.pnl > 0)
    losses = sum(1 for t in trades if t.pnl < 0)
    labels = Counter(label for t in trades for label in t.labels.split('|') if label)

    return {
        'trades': len(trades),
        'wins': wins,
        'losses': losses,
        'win_rate_pct': round(win_rate(trades) * 100.0, 2),
        'profit_factor': profit_factor(t.pnl for t in trades),
        'max_drawdown': max_drawdown(equity),
        'max_drawdown_pct': max_drawdown_pct(equity),
        'start_equity': start_equity,
        'end_equity': end_equity,
        'net_pnl': end_equity - start_equity,
        'total_return': (end_equity - start_equity) / start_equity if start_equity else 0.0,
        'avg_trade': _mean([t.pnl for t in trades]),
        'period_years': years,
        'trades_per_year': per_year,
        'sharpe_annual': sharpe_annualized(returns, per_year),
        'sortino_annual': sortino_annualized(returns, per_year),
        'cagr': cagr(start_equity, end_equity, years) if start_equity > 0 else 0.0,
        'exit_labels': dict(labels),
    }
