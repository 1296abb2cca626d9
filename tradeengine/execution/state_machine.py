"""
Position exit state machine.

A position moves through ``OPEN`` -> ``PARTIAL`` -> ``CLOSED``.  The
exit profile chosen at entry decides which transitions exist:

``pullback_two_step``
    Stop closes everything as ``SL``.  TP1 closes a fraction of the
    original quantity and moves the stop to the planned entry.  After
    that the stop closes the remainder as ``BE`` and TP2 as ``TP2``.
``trend_trail``
    A far target (``hard_tp_rr_trend`` R).  After each bar the stop
    trails the extreme close by ``chandelier_k`` ATR, only tightening.
``breakout_mm``
    Target at the larger of the measured move and ``atr_tp_mult`` ATR.
    A trade that has not moved ``time_stop_min_r`` R in its favour
    after ``time_stop_bars`` bars is closed at the bar close as ``TIME``.
``mean_revert``
    Static target ``mr_tp_rr`` R away.

Two evaluation contexts share the same rules.  Bar-close evaluation
uses the bar's low/high range; tick evaluation uses one price as both.
The stop is always checked before any target so that a bar touching
both is treated as a loss.  Trailing and the time stop only advance on
completed bars.

Every closing leg is filled through `apply_slippage`, priced against
the executed entry and appended to ``position.exits``.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional
import pandas as pd

from ..config.schema import ExitConfig
from ..exceptions import PositionInvariantError
from .fills import apply_slippage
from .models import Bar, ExitEvent, ExitLabel, ExitProfile, LONG, Position, side_sign


logger = logging.getLogger(__name__)

# Quantities closer than this are treated as equal.
_QTY_EPS = 1e-9

Handler = Callable[[Position, float, float, float, pd.Timestamp, bool], List[ExitEvent]]


class PositionStateMachine:
    """Evaluate exits for positions of every `ExitProfile`.

    Parameters
    ----------
    exits : ExitConfig
        Profile constants (fractions, multiples, time stop).
    slippage_bps : float
        Slippage applied to each exit fill.
    """

    def __init__(self, exits: Optional[ExitConfig] = None, slippage_bps: float = 0.0) -> None:
        self.exits = exits or ExitConfig()
        self.slippage_bps = slippage_bps
        self._handlers: Dict[ExitProfile, Handler] = {
            ExitProfile.PULLBACK_TWO_STEP: self._pullback_two_step,
            ExitProfile.TREND_TRAIL: self._trend_trail,
            ExitProfile.BREAKOUT_MM: self._breakout_mm,
            ExitProfile.MEAN_REVERT: self._mean_revert,
        }
        missing = set(ExitProfile) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No exit handler for profiles: {sorted(p.value for p in missing)}")

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    def init_levels(self, position: Position) -> None:
        """Set the profile target and excursion trackers of a new position."""
        sign = side_sign(position.side)
        risk = position.risk
        profile = position.profile
        if profile is ExitProfile.PULLBACK_TWO_STEP:
            position.target = position.tp2 if position.tp2 is not None else position.tp1
        elif profile is ExitProfile.TREND_TRAIL:
            position.target = position.entry + sign * self.exits.hard_tp_rr_trend * risk
        elif profile is ExitProfile.BREAKOUT_MM:
            distance = max(position.range_height or 0.0, self.exits.atr_tp_mult * position.atr)
            position.target = position.entry + sign * distance
        elif profile is ExitProfile.MEAN_REVERT:
            position.target = position.entry + sign * self.exits.mr_tp_rr * risk
        position.extreme_close = position.entry
        position.best_price = position.entry

    # ------------------------------------------------------------------
    # Evaluation entry points
    # ------------------------------------------------------------------
    def evaluate_bar_close(self, position: Position, bar: Bar) -> List[ExitEvent]:
        """Apply one completed bar to ``position`` and return the exits it caused."""
        if position.is_closed or position.halted:
            return []
        position.bars_held += 1
        self._track_best(position, bar.low, bar.high)
        handler = self._handlers[position.profile]
        return handler(position, bar.low, bar.high, bar.close, bar.timestamp, True)

    def evaluate_tick(self, position: Position, price: float, ts: pd.Timestamp) -> List[ExitEvent]:
        """Apply a single live price to ``position``."""
        if position.is_closed or position.halted:
            return []
        self._track_best(position, price, price)
        handler = self._handlers[position.profile]
        return handler(position, price, price, price, ts, False)

    def force_close(
        self,
        position: Position,
        price: float,
        ts: pd.Timestamp,
        label: ExitLabel = ExitLabel.MKT_EOD,
    ) -> List[ExitEvent]:
        """Close whatever remains of ``position`` at ``price``."""
        if position.is_closed or position.halted:
            return []
        return [self._close(position, label, price, ts)]

    # ------------------------------------------------------------------
    # Profile handlers
    # ------------------------------------------------------------------
    def _pullback_two_step(self, pos, low, high, close, ts, on_bar):
        events: List[ExitEvent] = []
        if not pos.tp1_hit:
            if self._stop_touched(pos, low, high):
                return [self._close(pos, self._stop_label(pos), pos.stop, ts)]
            if not self._reached(pos, pos.tp1, low, high):
                return events
            if pos.tp2 is None or self.exits.tp1_fraction >= 1.0:
                return [self._close(pos, ExitLabel.TP, pos.tp1, ts)]
            events.append(self._close(pos, ExitLabel.TP1, pos.tp1, ts, fraction=self.exits.tp1_fraction))
            pos.tp1_hit = True
            self._tighten_stop(pos, pos.entry)
            # The rest of the bar's range cannot be ordered against TP1.
            if on_bar:
                return events
        if self._stop_touched(pos, low, high):
            events.append(self._close(pos, ExitLabel.BE, pos.stop, ts))
        elif pos.tp2 is not None and self._reached(pos, pos.tp2, low, high):
            events.append(self._close(pos, ExitLabel.TP2, pos.tp2, ts))
        return events

    def _trend_trail(self, pos, low, high, close, ts, on_bar):
        if self._stop_touched(pos, low, high):
            return [self._close(pos, self._stop_label(pos), pos.stop, ts)]
        if self._reached(pos, pos.target, low, high):
            return [self._close(pos, ExitLabel.TP, pos.target, ts)]
        if on_bar:
            self._trail(pos, close)
        return []

    def _breakout_mm(self, pos, low, high, close, ts, on_bar):
        if self._stop_touched(pos, low, high):
            return [self._close(pos, self._stop_label(pos), pos.stop, ts)]
        if self._reached(pos, pos.target, low, high):
            return [self._close(pos, ExitLabel.TP, pos.target, ts)]
        if (
            on_bar
            and pos.bars_held >= self.exits.time_stop_bars
            and self._favourable_r(pos) < self.exits.time_stop_min_r
        ):
            return [self._close(pos, ExitLabel.TIME, close, ts)]
        return []

    def _mean_revert(self, pos, low, high, close, ts, on_bar):
        if self._stop_touched(pos, low, high):
            return [self._close(pos, self._stop_label(pos), pos.stop, ts)]
        if self._reached(pos, pos.target, low, high):
            return [self._close(pos, ExitLabel.TP, pos.target, ts)]
        return []

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _stop_touched(pos: Position, low: float, high: float) -> bool:
        if pos.side == LONG:
            return low <= pos.stop
        return high >= pos.stop

    @staticmethod
    def _reached(pos: Position, level: float, low: float, high: float) -> bool:
        if pos.side == LONG:
            return high >= level
        return low <= level

    @staticmethod
    def _stop_label(pos: Position) -> ExitLabel:
        if pos.tp1_hit:
            return ExitLabel.BE
        if pos.stop != pos.initial_stop:
            return ExitLabel.TRAIL
        return ExitLabel.SL

    @staticmethod
    def _track_best(pos: Position, low: float, high: float) -> None:
        favourable = high if pos.side == LONG else low
        if pos.best_price is None:
            pos.best_price = favourable
        elif side_sign(pos.side) * (favourable - pos.best_price) > 0:
            pos.best_price = favourable

    @staticmethod
    def _favourable_r(pos: Position) -> float:
        if pos.best_price is None or pos.risk <= 0:
            return 0.0
        return side_sign(pos.side) * (pos.best_price - pos.entry) / pos.risk

    @staticmethod
    def _tighten_stop(pos: Position, candidate: float) -> bool:
        """Move the stop to ``candidate`` only if that reduces risk."""
        if side_sign(pos.side) * (candidate - pos.stop) > 0:
            logger.debug("%s stop %.6f -> %.6f", pos.pos_id, pos.stop, candidate)
            pos.stop = candidate
            return True
        return False

    def _trail(self, pos: Position, close: float) -> None:
        sign = side_sign(pos.side)
        if pos.extreme_close is None or sign * (close - pos.extreme_close) > 0:
            pos.extreme_close = close
        self._tighten_stop(pos, pos.extreme_close - sign * self.exits.chandelier_k * pos.atr)

    def _close(
        self,
        pos: Position,
        label: ExitLabel,
        price: float,
        ts: pd.Timestamp,
        fraction: Optional[float] = None,
    ) -> ExitEvent:
        """Close ``fraction`` of the original quantity (the remainder when ``None``)."""
        if pos.qty <= 0:
            raise PositionInvariantError(pos.pos_id, f"{label.value} exit after the position closed")
        if fraction is None:
            qty = pos.qty
        else:
            qty = pos.qty_orig * fraction
            if qty > pos.qty + _QTY_EPS:
                raise PositionInvariantError(
                    pos.pos_id, f"{label.value} closes {qty} but only {pos.qty} remains"
                )
        final = pos.qty - qty <= _QTY_EPS
        if final:
            qty = pos.qty
            fraction = 1.0 - pos.closed_fraction

        exec_price = apply_slippage(price, pos.side, self.slippage_bps, for_entry=False)
        pnl = side_sign(pos.side) * (exec_price - pos.entry_exec) * qty
        event = ExitEvent(
            pos_id=pos.pos_id,
            symbol=pos.symbol,
            side=pos.side,
            label=label,
            fraction=fraction,
            qty=qty,
            price=exec_price,
            pnl=pnl,
            timestamp=ts,
        )
        pos.exits.append(event)
        pos.closed_fraction = 1.0 if final else pos.closed_fraction + fraction
        pos.qty = 0.0 if final else pos.qty - qty
        logger.debug("%s %s %.6f @ %.6f pnl=%.2f", pos.pos_id, label.value, qty, exec_price, pnl)
        return event
