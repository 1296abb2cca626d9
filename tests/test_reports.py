import json
import os
import sys
import tempfile
import pandas as pd

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from tradeengine.config.schema import Config, DataConfig
from tradeengine.data.csv_data import CSVDataLoader
from tradeengine.execution.backtest_exec import BacktestEngine
from tradeengine.execution.models import TradePlan
from tradeengine.reporting.report import generate_backtest_report

import unittest


PLAN = TradePlan(side='long', entry=100.0, stop=95.0, tp1=100.4, exit_profile='pullback_two_step', reason='test')


def signal_on_third_bar(bars, params):
    if len(bars) == 3:
        return PLAN, 'test'
    return None, 'no-breakout'


def write_standard_csv(path: str, n: int = 6) -> None:
    rows = ["time,open,high,low,close,tick_volume"]
    for i in range(n):
        rows.append(f"2024-01-01 {i:02d}:00:00,100,100.5,99.5,100,{10 + i}")
    with open(path, 'w', encoding='utf-8') as fh:
        fh.write("\n".join(rows) + "\n")


class TestCSVDataLoader(unittest.TestCase):
    def test_standard_layout(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            write_standard_csv(os.path.join(tmp, 'EURUSD.csv'))
            df = CSVDataLoader(tmp, 'UTC').load('EURUSD')
        self.assertEqual(list(df.columns), ['open', 'high', 'low', 'close', 'volume'])
        self.assertEqual(len(df), 6)
        self.assertEqual(str(df.index.tz), 'UTC')
        self.assertEqual(df['volume'].iloc[-1], 15.0)

    def test_mt5_export_layout(self) -> None:
        text = (
            "<DATE>\t<TIME>\t<OPEN>\t<HIGH>\t<LOW>\t<CLOSE>\t<TICKVOL>\n"
            "2024.01.02\t04:00:00\t1.1\t1.2\t1.0\t1.15\t30\n"
            "2024.01.02\t00:00:00\t1.0\t1.1\t0.9\t1.05\t20\n"
        )
        with tempfile.TemporaryDirectory() as tmp:
            with open(os.path.join(tmp, 'EURUSD.csv'), 'w', encoding='utf-8') as fh:
                fh.write(text)
            df = CSVDataLoader(tmp, 'UTC').load('EURUSD')
        self.assertEqual(df.index[0], pd.Timestamp('2024-01-02 00:00', tz='UTC'))
        self.assertEqual(df['close'].tolist(), [1.05, 1.15])
        self.assertEqual(df['volume'].tolist(), [20.0, 30.0])

    def test_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(FileNotFoundError):
                CSVDataLoader(tmp, 'UTC').load('NOPE')


class TestBacktestReport(unittest.TestCase):
    def test_backtest_engine_and_report_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            write_standard_csv(os.path.join(tmp, 'EURUSD.csv'))
            config = Config(symbols=['EURUSD', 'MISSING'], data=DataConfig(csv_dir=tmp))
            results = BacktestEngine(config, signal_fn=signal_on_third_bar).run()
            self.assertEqual(list(results), ['EURUSD'])
            result = results['EURUSD']
            self.assertEqual(result.trades[0].labels, 'TP')

            out_dir = os.path.join(tmp, 'results')
            summary = generate_backtest_report(
                result.trades, result.equity_curve, out_dir=out_dir,
                exits=result.exits, summary=result.summary, prefix='EURUSD_',
            )
            for name in ('trades.csv', 'exits.csv', 'equity_curve.csv', 'summary.json', 'equity_curve.png'):
                self.assertTrue(os.path.exists(os.path.join(out_dir, f"EURUSD_{name}")), name)
            with open(os.path.join(out_dir, 'EURUSD_summary.json'), encoding='utf-8') as fh:
                written = json.load(fh)
        self.assertEqual(summary['trades'], 1)
        self.assertEqual(written['profit_factor'], 'inf')
        self.assertEqual(written['symbol'], 'EURUSD')


if __name__ == '__main__':
    unittest.main()
