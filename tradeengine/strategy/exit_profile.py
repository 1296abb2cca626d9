"""
Exit profile selection.

When a position is opened the engine classifies the market regime at
the signal bar and picks one exit profile for the whole life of the
position.  Classification uses four features measured on the signal
bar:

- ATR as a fraction of price,
- distance of the close from the daily VWAP (as a fraction),
- volume relative to its moving average,
- position of the close inside a rolling high/low channel (0..1).

Three selection modes exist.  ``auto`` applies the regime rules in
`choose_exit_profile`.  ``map`` looks the profile up per strategy id.
Any profile name selects that profile directly.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Mapping, Optional
import pandas as pd

from ..execution.models import ExitProfile, LONG, SHORT
from .indicators import atr, daily_vwap, donchian, sma


BREAKOUT_CHANNEL_EDGE = 0.05
BREAKOUT_MIN_VOL_RATIO = 1.5
MEAN_REVERT_MIN_VWAP_DIST = 0.010
MEAN_REVERT_MAX_VOL_RATIO = 1.2

DEFAULT_PROFILE_MAP: Dict[str, ExitProfile] = {
    'atr_breakout': ExitProfile.BREAKOUT_MM,
    'bb_rsi_mean_reversion': ExitProfile.MEAN_REVERT,
    'macd_dualema_rvol': ExitProfile.TREND_TRAIL,
}
FALLBACK_PROFILE = ExitProfile.PULLBACK_TWO_STEP


@dataclass(frozen=True)
class ExitFeatures:
    """Regime features measured on a signal bar."""
    atr_pct: float = 0.0
    vwap_dist: float = 0.0
    vol_ratio: float = 1.0
    channel_pos: Optional[float] = None


def _finite(value) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    return None if math.isnan(value) or math.isinf(value) else value


def compute_features(
    bars: pd.DataFrame,
    atr_len: int = 14,
    channel_len: int = 20,
    vol_len: int = 20,
) -> ExitFeatures:
    """Measure `ExitFeatures` on the last row of ``bars``.

    Missing history degrades to neutral values: zero ATR and VWAP
    distance, a volume ratio of one and no channel position.
    """
    if bars.empty:
        return ExitFeatures()
    close = float(bars['close'].iloc[-1])

    atr_value = _finite(atr(bars, atr_len).iloc[-1])
    atr_pct = atr_value / close if atr_value and close else 0.0

    vwap_value = _finite(daily_vwap(bars).iloc[-1])
    vwap_dist = (close - vwap_value) / vwap_value if vwap_value else 0.0

    vol_ratio = 1.0
    if 'volume' in bars:
        vol_ma = _finite(sma(bars['volume'].fillna(0.0), vol_len).iloc[-1])
        if vol_ma:
            vol_ratio = float(bars['volume'].iloc[-1] or 0.0) / vol_ma

    channel = donchian(bars, channel_len).iloc[-1]
    upper, lower = _finite(channel['upper']), _finite(channel['lower'])
    channel_pos = None
    if upper is not None and lower is not None and upper > lower:
        channel_pos = (close - lower) / (upper - lower)

    return ExitFeatures(atr_pct=atr_pct, vwap_dist=vwap_dist, vol_ratio=vol_ratio, channel_pos=channel_pos)


def parse_profile(name) -> Optional[ExitProfile]:
    """Return the `ExitProfile` called ``name`` or ``None``."""
    if isinstance(name, ExitProfile):
        return name
    try:
        return ExitProfile(str(name).strip().lower())
    except ValueError:
        return None


def _auto_profile(features: ExitFeatures, side: str) -> ExitProfile:
    pos = features.channel_pos
    if pos is not None and features.vol_ratio >= BREAKOUT_MIN_VOL_RATIO:
        if side == LONG and pos >= 1.0 - BREAKOUT_CHANNEL_EDGE:
            return ExitProfile.BREAKOUT_MM
        if side == SHORT and pos <= BREAKOUT_CHANNEL_EDGE:
            return ExitProfile.BREAKOUT_MM
    if abs(features.vwap_dist) >= MEAN_REVERT_MIN_VWAP_DIST and features.vol_ratio <= MEAN_REVERT_MAX_VOL_RATIO:
        return ExitProfile.MEAN_REVERT
    return ExitProfile.TREND_TRAIL


def choose_exit_profile(
    features: ExitFeatures,
    side: str,
    mode: str = 'auto',
    strategy_id: str = 'atr_breakout',
    profile_map: Optional[Mapping[str, str]] = None,
) -> ExitProfile:
    """Select the exit profile for a new position.

    Parameters
    ----------
    features : ExitFeatures
        Regime snapshot at the signal bar.
    side : str
        ``'long'`` or ``'short'``.
    mode : str
        ``'auto'``, ``'map'`` or a profile name.  Unrecognised names
        behave like ``'auto'``.
    strategy_id : str
        Key used in ``map`` mode.
    profile_map : mapping, optional
        Extra strategy-to-profile entries layered over
        `DEFAULT_PROFILE_MAP`.

    Returns
    -------
    ExitProfile
    """
    key = str(mode or 'auto').strip().lower()
    if key == 'map':
        table: Dict[str, ExitProfile] = dict(DEFAULT_PROFILE_MAP)
        for sid, name in (profile_map or {}).items():
            profile = parse_profile(name)
            if profile is not None:
                table[sid] = profile
        return table.get(strategy_id, FALLBACK_PROFILE)
    explicit = parse_profile(key)
    if explicit is not None:
        return explicit
    return _auto_profile(features, side)
