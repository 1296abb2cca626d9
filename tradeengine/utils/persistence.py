"""
State and ledger persistence.

Paper and live sessions need to remember their state across restarts:
which positions are open (including partial exits already taken), the
account equity and the last processed bar per symbol.  This module
provides JSON load/save functions for that state, conversions between
`Position` and plain dicts, and `CSVLedgerSink`, which appends ledger
records to CSV files.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, Optional
import pandas as pd

from ..execution.ledger import LedgerSink
from ..execution.models import ClosedTrade, EquityPoint, ExitEvent, ExitLabel, ExitProfile, Position
from .timeutils import parse_timestamp


def load_state(path: str) -> Optional[Dict[str, Any]]:
    """Load a JSON state file.

    Parameters
    ----------
    path : str
        Path to the JSON file.

    Returns
    -------
    dict or None
        The state dictionary if the file exists, otherwise `None`.
    """
    file_path = Path(path)
    if not file_path.exists():
        return None
    with file_path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def save_state(path: str, state: Dict[str, Any]) -> None:
    """Write a JSON state file to disk.

    The file is written to a temporary sibling first and then renamed,
    so a crash never leaves a truncated state file behind.
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = file_path.with_name(file_path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(state, fh, ensure_ascii=False, indent=2, sort_keys=True)
    tmp_path.replace(file_path)


def _iso(ts: Optional[pd.Timestamp]) -> Optional[str]:
    return pd.Timestamp(ts).isoformat() if ts is not None else None


def exit_to_dict(event: ExitEvent) -> Dict[str, Any]:
    return {
        'pos_id': event.pos_id,
        'symbol': event.symbol,
        'side': event.side,
        'label': event.label.value,
        'fraction': event.fraction,
        'qty': event.qty,
        'price': event.price,
        'pnl': event.pnl,
        'timestamp': _iso(event.timestamp),
    }


def exit_from_dict(data: Dict[str, Any]) -> ExitEvent:
    return ExitEvent(
        pos_id=data['pos_id'],
        symbol=data['symbol'],
        side=data['side'],
        label=ExitLabel(data['label']),
        fraction=float(data['fraction']),
        qty=float(data['qty']),
        price=float(data['price']),
        pnl=float(data['pnl']),
        timestamp=parse_timestamp(data['timestamp']),
    )


def position_to_dict(pos: Position) -> Dict[str, Any]:
    """Serialise an open position for the state file."""
    return {
        'pos_id': pos.pos_id,
        'symbol': pos.symbol,
        'side': pos.side,
        'qty_orig': pos.qty_orig,
        'qty': pos.qty,
        'entry': pos.entry,
        'entry_exec': pos.entry_exec,
        'stop': pos.stop,
        'initial_stop': pos.initial_stop,
        'tp1': pos.tp1,
        'tp2': pos.tp2,
        'target': pos.target,
        'profile': pos.profile.value,
        'atr': pos.atr,
        'opened_at': _iso(pos.opened_at),
        'range_height': pos.range_height,
        'tp1_hit': pos.tp1_hit,
        'bars_held': pos.bars_held,
        'extreme_close': pos.extreme_close,
        'best_price': pos.best_price,
        'closed_fraction': pos.closed_fraction,
        'halted': pos.halted,
        'settled': pos.settled,
        'exits': [exit_to_dict(e) for e in pos.exits],
    }


def position_from_dict(data: Dict[str, Any]) -> Position:
    """Rebuild a `Position` written by `position_to_dict`."""
    return Position(
        pos_id=data['pos_id'],
        symbol=data['symbol'],
        side=data['side'],
        qty_orig=float(data['qty_orig']),
        qty=float(data['qty']),
        entry=float(data['entry']),
        entry_exec=float(data['entry_exec']),
        stop=float(data['stop']),
        initial_stop=float(data['initial_stop']),
        tp1=float(data['tp1']),
        tp2=None if data.get('tp2') is None else float(data['tp2']),
        target=float(data['target']),
        profile=ExitProfile(data['profile']),
        atr=float(data['atr']),
        opened_at=parse_timestamp(data['opened_at']),
        range_height=data.get('range_height'),
        tp1_hit=bool(data.get('tp1_hit', False)),
        bars_held=int(data.get('bars_held', 0)),
        extreme_close=data.get('extreme_close'),
        best_price=data.get('best_price'),
        closed_fraction=float(data.get('closed_fraction', 0.0)),
        halted=bool(data.get('halted', False)),
        settled=bool(data.get('settled', False)),
        exits=[exit_from_dict(e) for e in data.get('exits', [])],
    )


class CSVLedgerSink(LedgerSink):
    """Append ledger records to ``entries.csv``, ``exits.csv``,
    ``trades.csv`` and ``equity.csv`` in ``out_dir``."""

    def __init__(self, out_dir: str) -> None:
        self.out_dir = Path(out_dir)
        self.out_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _append(self, name: str, row: Dict[str, Any]) -> None:
        path = self.out_dir / name
        with self._lock:
            pd.DataFrame([row]).to_csv(path, mode="a", header=not path.exists(), index=False)

    def on_entry(self, position: Position) -> None:
        self._append('entries.csv', {
            'timestamp': _iso(position.opened_at),
            'pos_id': position.pos_id,
            'symbol': position.symbol,
            'side': position.side,
            'qty': position.qty_orig,
            'entry': position.entry,
            'entry_exec': position.entry_exec,
            'stop': position.stop,
            'tp1': position.tp1,
            'tp2': position.tp2,
            'target': position.target,
            'profile': position.profile.value,
        })

    def on_exit(self, event: ExitEvent) -> None:
        self._append('exits.csv', exit_to_dict(event))

    def on_trade(self, trade: ClosedTrade) -> None:
        self._append('trades.csv', {
            'pos_id': trade.pos_id,
            'symbol': trade.symbol,
            'side': trade.side,
            'profile': trade.profile.value,
            'entry_time': _iso(trade.entry_time),
            'exit_time': _iso(trade.exit_time),
            'entry': trade.entry_price,
            'entry_exec': trade.entry_exec,
            'exit_avg': trade.exit_avg,
            'qty': trade.qty,
            'pnl': trade.pnl,
            'labels': trade.labels,
            'equity_after': trade.equity_after,
        })

    def on_equity(self, point: EquityPoint) -> None:
        self._append('equity.csv', {'timestamp': _iso(point.timestamp), 'equity': point.equity})
