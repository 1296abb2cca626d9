"""
Report generation utilities.

This module turns backtest results into human-readable artefacts:
CSV files of trades, exit legs and the equity curve, a JSON summary of
performance metrics and a PNG chart of the equity curve.
"""

from __future__ import annotations

import os
import json
import math
from typing import Any, Dict, List, Optional
import pandas as pd
import matplotlib

# Use non-interactive backend for environments without display
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from ..execution.models import ClosedTrade, EquityPoint, ExitEvent
from .metrics import compute_metrics


def _json_safe(value: Any) -> Any:
    """Replace non-finite floats, which JSON cannot represent, by strings."""
    if isinstance(value, float) and not math.isfinite(value):
        return "inf" if value > 0 else ("-inf" if value < 0 else "nan")
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    return value


def trades_frame(trades: List[ClosedTrade]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                'pos_id': t.pos_id,
                'symbol': t.symbol,
                'side': t.side,
                'profile': t.profile.value,
                'entry_time': t.entry_time.isoformat(),
                'exit_time': t.exit_time.isoformat(),
                'entry': t.entry_price,
                'entry_exec': t.entry_exec,
                'exit_avg': t.exit_avg,
                'qty': t.qty,
                'pnl': t.pnl,
                'return_pct': t.return_pct * 100.0,
                'labels': t.labels,
                'equity_after': t.equity_after,
            }
            for t in trades
        ]
    )


def generate_backtest_report(
    trades: List[ClosedTrade],
    equity_curve: List[EquityPoint],
    out_dir: str = "results",
    exits: Optional[List[ExitEvent]] = None,
    summary: Optional[Dict[str, Any]] = None,
    prefix: str = "",
) -> Dict[str, Any]:
    """Generate report files for a backtest run.

    Creates the output directory if it does not exist and writes the
    following files (each name optionally prefixed with ``prefix``):

    - `trades.csv` – one row per closed trade
    - `exits.csv` – one row per exit leg
    - `equity_curve.csv` – starting equity and equity after each trade
    - `summary.json` – performance metrics
    - `equity_curve.png` – line chart of the equity curve

    Returns the summary that was written.
    """
    os.makedirs(out_dir, exist_ok=True)

    def path(name: str) -> str:
        return os.path.join(out_dir, f"{prefix}{name}")

    trades_frame(trades).to_csv(path('trades.csv'), index=False)

    df_exits = pd.DataFrame(
        [
            {
                'pos_id': e.pos_id,
                'symbol': e.symbol,
                'side': e.side,
                'label': e.label.value,
                'fraction': e.fraction,
                'qty': e.qty,
                'price': e.price,
                'pnl': e.pnl,
                'timestamp': e.timestamp.isoformat(),
            }
            for e in (exits or [])
        ]
    )
    df_exits.to_csv(path('exits.csv'), index=False)

    df_eq = pd.DataFrame([{'timestamp': pt.timestamp.isoformat(), 'equity': pt.equity} for pt in equity_curve])
    df_eq.to_csv(path('equity_curve.csv'), index=False)

    metrics = summary if summary is not None else compute_metrics(trades, equity_curve)
    with open(path('summary.json'), 'w', encoding='utf-8') as fh:
        json.dump(_json_safe(metrics), fh, indent=2, ensure_ascii=False, default=str)

    fig, ax = plt.subplots(figsize=(10, 4))
    if not df_eq.empty:
        ax.plot(pd.to_datetime(df_eq['timestamp'], utc=True), df_eq['equity'], linewidth=1.5)
        ax.set_title('Equity Curve')
        ax.set_xlabel('Time')
        ax.set_ylabel('Equity')
        fig.autofmt_xdate()
    fig.tight_layout()
    fig.savefig(path('equity_curve.png'))
    plt.close(fig)
    return metrics
