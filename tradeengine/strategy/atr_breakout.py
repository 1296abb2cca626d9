"""
Donchian channel breakout with ATR stops.

The last completed bar is the signal bar.  A long signal fires when it
closes above the highest high of the preceding ``donchian_len`` bars
(and its high reached that level); a short signal is the mirror image
on the lowest low.  The stop sits ``atr_mult`` ATR behind the close and
the two targets are ``tp1_rr`` and ``tp2_rr`` risk units away.

The function follows the signal contract used by `TradingEngine`: it
takes the bar frame and a parameter dict and returns ``(plan, reason)``
where ``plan`` is ``None`` when no trade should be taken.
"""

from __future__ import annotations

import math
from dataclasses import asdict
from typing import Any, Dict, Optional, Tuple
import pandas as pd

from ..config.schema import StrategyConfig
from ..execution.models import LONG, SHORT, TradePlan
from .indicators import atr, daily_vwap


def default_params(strategy: Optional[StrategyConfig] = None) -> Dict[str, Any]:
    return asdict(strategy or StrategyConfig())


def atr_breakout_signal(bars: pd.DataFrame, params: Dict[str, Any]) -> Tuple[Optional[TradePlan], str]:
    """Evaluate the breakout rules on the last row of ``bars``.

    Returns
    -------
    plan : TradePlan or None
        The proposed trade.
    reason : str
        ``'long-breakout'``/``'short-breakout'`` for a signal, otherwise
        ``'insufficient-data'``, ``'atr-na'`` or ``'no-breakout'``.
    """
    settings = default_params()
    settings.update(params or {})
    don_len = int(settings['donchian_len'])
    atr_len = int(settings['atr_len'])
    atr_mult = float(settings['atr_mult'])
    tp1_rr = float(settings['tp1_rr'])
    tp2_rr = float(settings['tp2_rr'])

    if bars is None or len(bars) < max(don_len, atr_len) + 2:
        return None, 'insufficient-data'

    atr_value = float(atr(bars, atr_len).iloc[-1])
    if math.isnan(atr_value) or atr_value <= 0:
        return None, 'atr-na'

    last = bars.iloc[-1]
    window = bars.iloc[-1 - don_len:-1]
    channel_high = float(window['high'].max())
    channel_low = float(window['low'].min())
    close = float(last['close'])

    vwap = float(daily_vwap(bars).iloc[-1]) if 'volume' in bars else float('nan')
    ref_price = close if math.isnan(vwap) else vwap
    common = dict(atr=atr_value, range_height=channel_high - channel_low, ref_price=ref_price)

    if close > channel_high and float(last['high']) >= channel_high:
        stop = close - atr_mult * atr_value
        risk = close - stop
        plan = TradePlan(side=LONG, entry=close, stop=stop, tp1=close + tp1_rr * risk,
                         tp2=close + tp2_rr * risk, reason='long-breakout', **common)
        return plan, plan.reason

    if close < channel_low and float(last['low']) <= channel_low:
        stop = close + atr_mult * atr_value
        risk = stop - close
        plan = TradePlan(side=SHORT, entry=close, stop=stop, tp1=close - tp1_rr * risk,
                         tp2=close - tp2_rr * risk, reason='short-breakout', **common)
        return plan, plan.reason

    return None, 'no-breakout'
