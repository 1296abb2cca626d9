"""
Linear slippage fill model.

Slippage is expressed in basis points of the planned price and always
moves the executed price against the position: long entries fill
higher and long exits lower, short positions the mirror image.
"""

from __future__ import annotations

from .models import side_sign


def apply_slippage(price: float, side: str, slippage_bps: float, for_entry: bool) -> float:
    """Return the executed price for a planned ``price``.

    Parameters
    ----------
    price : float
        Planned (trigger) price.
    side : str
        Position side, ``'long'`` or ``'short'``.
    slippage_bps : float
        Slippage in basis points.  Negative values are treated as zero.
    for_entry : bool
        ``True`` for the opening fill, ``False`` for an exit leg.
    """
    slip = max(0.0, float(slippage_bps or 0.0)) / 10_000.0
    if slip == 0.0:
        return price
    direction = side_sign(side) if for_entry else -side_sign(side)
    return price * (1.0 + direction * slip)
