import math
import os
import sys
import pandas as pd

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from tradeengine.execution.models import ClosedTrade, EquityPoint, ExitProfile
from tradeengine.reporting.metrics import (
    cagr,
    compute_metrics,
    max_drawdown,
    max_drawdown_pct,
    period_years,
    profit_factor,
    sharpe_annualized,
    sortino_annualized,
)

import unittest


T0 = pd.Timestamp("2023-01-01", tz="UTC")


def trade(pnl: float, equity_after: float, labels: str = 'TP') -> ClosedTrade:
    return ClosedTrade(
        pos_id='P', symbol='TEST', side='long', profile=ExitProfile.TREND_TRAIL,
        entry_price=100.0, entry_exec=100.0, exit_avg=100.0, qty=1.0, pnl=pnl,
        labels=labels, equity_after=equity_after, entry_time=T0, exit_time=T0,
    )


class TestMetrics(unittest.TestCase):
    def test_drawdown_and_profit_factor(self) -> None:
        self.assertAlmostEqual(max_drawdown([10_000, 10_100, 9_950, 10_300]), 150.0)
        self.assertAlmostEqual(max_drawdown_pct([10_000, 10_100, 9_950, 10_300]), 150.0 / 10_100)
        self.assertAlmostEqual(profit_factor([100.0, 200.0, -150.0]), 2.0)

    def test_profit_factor_edges(self) -> None:
        self.assertEqual(profit_factor([10.0, 5.0]), math.inf)
        self.assertEqual(profit_factor([]), 0.0)
        self.assertEqual(profit_factor([0.0]), 0.0)
        self.assertEqual(profit_factor([-3.0]), 0.0)

    def test_sharpe_and_sortino(self) -> None:
        returns = [0.01, -0.01, 0.02]
        mean = sum(returns) / 3
        sd = math.sqrt(sum((r - mean) ** 2 for r in returns) / 3)
        self.assertAlmostEqual(sharpe_annualized(returns, 16.0), mean / sd * 4.0)
        self.assertAlmostEqual(sharpe_annualized(returns, 0.25), mean / sd)
        downside = math.sqrt((0.01 ** 2) / 3)
        self.assertAlmostEqual(sortino_annualized(returns, 4.0), mean / downside * 2.0)
        self.assertEqual(sharpe_annualized([0.01], 10.0), 0.0)
        self.assertEqual(sortino_annualized([0.01, 0.02], 10.0), 0.0)

    def test_cagr_floors_period(self) -> None:
        self.assertAlmostEqual(cagr(10_000, 11_000, 1.0), 0.1)
        self.assertAlmostEqual(period_years(T0, T0), 1.0 / 365.0)
        self.assertTrue(math.isfinite(cagr(10_000, 10_001, 0.0)))
        self.assertEqual(cagr(10_000, 1e12, 1e-9), math.inf)

    def test_compute_metrics_summary(self) -> None:
        trades = [trade(100.0, 10_100.0), trade(-150.0, 9_950.0, 'TP1|BE'), trade(350.0, 10_300.0)]
        curve = [
            EquityPoint(T0, 10_000.0),
            EquityPoint(T0 + pd.Timedelta(days=30), 10_100.0),
            EquityPoint(T0 + pd.Timedelta(days=60), 9_950.0),
            EquityPoint(T0 + pd.Timedelta(days=365), 10_300.0),
        ]
        summary = compute_metrics(trades, curve)
        self.assertEqual(summary['trades'], 3)
        self.assertEqual(summary['wins'], 2)
        self.assertEqual(summary['losses'], 1)
        self.assertAlmostEqual(summary['max_drawdown'], 150.0)
        self.assertAlmostEqual(summary['profit_factor'], 3.0)
        self.assertAlmostEqual(summary['net_pnl'], 300.0)
        self.assertAlmostEqual(summary['period_years'], 1.0)
        self.assertAlmostEqual(summary['cagr'], 0.03)
        self.assertEqual(summary['exit_labels'], {'TP': 2, 'TP1': 1, 'BE': 1})

    def test_empty_inputs(self) -> None:
        summary = compute_metrics([], [])
        self.assertEqual(summary['trades'], 0)
        self.assertEqual(summary['profit_factor'], 0.0)
        self.assertEqual(summary['sharpe_annual'], 0.0)


if __name__ == '__main__':
    unittest.main()
