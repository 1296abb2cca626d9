"""
Vectorised indicator helpers.

All functions take a bar DataFrame indexed by timestamp with columns
``open``, ``high``, ``low``, ``close`` and (optionally) ``volume`` and
return a ``pandas.Series`` aligned on the same index.  Values are NaN
until enough history exists.
"""

from __future__ import annotations

import pandas as pd


def sma(series: pd.Series, length: int) -> pd.Series:
    """Simple moving average."""
    return series.rolling(window=length, min_periods=length).mean()


def true_range(bars: pd.DataFrame) -> pd.Series:
    prev_close = bars['close'].shift(1)
    ranges = pd.concat(
        [
            bars['high'] - bars['low'],
            (bars['high'] - prev_close).abs(),
            (bars['low'] - prev_close).abs(),
        ],
        axis=1,
    )
    tr = ranges.max(axis=1)
    # The first bar has no previous close and is left undefined.
    tr.iloc[:1] = float('nan')
    return tr


def atr(bars: pd.DataFrame, length: int = 14) -> pd.Series:
    """Average true range as a simple mean of the last ``length`` ranges."""
    return sma(true_range(bars), length)


def daily_vwap(bars: pd.DataFrame) -> pd.Series:
    """Volume-weighted typical price, reset at each UTC day.

    Bars without volume contribute nothing; the value is NaN until the
    day has traded some volume.
    """
    index = pd.DatetimeIndex(bars.index)
    if index.tz is None:
        index = index.tz_localize('UTC')
    day = pd.Series(index.tz_convert('UTC').normalize(), index=bars.index)

    volume = bars['volume'].fillna(0.0) if 'volume' in bars else pd.Series(0.0, index=bars.index)
    typical = (bars['high'] + bars['low'] + bars['close']) / 3.0
    cum_pv = (typical * volume).groupby(day).cumsum()
    cum_v = volume.groupby(day).cumsum()
    return (cum_pv / cum_v).where(cum_v > 0)


def donchian(bars: pd.DataFrame, length: int = 20) -> pd.DataFrame:
    """Rolling highest high and lowest low including the current bar."""
    return pd.DataFrame(
        {
            'upper': bars['high'].rolling(window=length, min_periods=length).max(),
            'lower': bars['low'].rolling(window=length, min_periods=length).min(),
        },
        index=bars.index,
    )
