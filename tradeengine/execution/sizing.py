"""
Risk-based position sizing.

The quantity of a new position is chosen so that a stop-out loses a
fixed fraction of account equity::

    qty = equity * risk_fraction / |entry - stop|

The result is floored to the instrument's quantity step.  A result of
zero means the trade must be skipped (reported as ``qty-zero``); the
sizer never raises, and malformed instrument metadata simply disables
rounding or the minimum check.
"""

from __future__ import annotations

import math
from typing import Optional

from .models import Instrument

# Absorbs float noise such as 50 / 0.001 == 49999.999999999996.
_STEP_EPS = 1e-9


def _positive_or_none(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number) or number <= 0:
        return None
    return number


def round_to_step(qty: float, step) -> float:
    """Floor ``qty`` to a multiple of ``step``.

    An unusable step (``None``, zero, negative or non-numeric) returns
    ``qty`` unchanged.
    """
    step_value = _positive_or_none(step)
    if step_value is None:
        return qty
    units = math.floor(qty / step_value + _STEP_EPS)
    return round(units * step_value, 12)


def position_size(
    equity: float,
    risk_fraction: float,
    entry: float,
    stop: float,
    instrument: Optional[Instrument] = None,
) -> float:
    """Compute the quantity to trade for a planned entry.

    Parameters
    ----------
    equity : float
        Current account equity.
    risk_fraction : float
        Fraction of equity lost if the stop is hit (``0.01`` = 1 %).
    entry, stop : float
        Planned entry and stop prices.
    instrument : Instrument, optional
        Quantity step and minimum of the traded symbol.

    Returns
    -------
    float
        Quantity floored to the step, or ``0.0`` when the trade cannot
        be sized.
    """
    try:
        risk_distance = abs(float(entry) - float(stop))
        equity = float(equity)
        risk_fraction = float(risk_fraction)
    except (TypeError, ValueError):
        return 0.0
    if not risk_distance > 0 or not equity > 0 or not risk_fraction > 0:
        return 0.0
    qty = equity * risk_fraction / risk_distance
    if math.isnan(qty) or math.isinf(qty):
        return 0.0
    if instrument is not None:
        qty = round_to_step(qty, instrument.qty_step)
        min_qty = _positive_or_none(instrument.min_qty)
        if min_qty is not None and qty < min_qty:
            return 0.0
    return qty if qty > 0 else 0.0
