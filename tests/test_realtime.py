import os
import sys
import tempfile
import time
import pandas as pd

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import threading

from tradeengine.config.schema import Config, RuntimeConfig
from tradeengine.data.price_source import PriceSource
from tradeengine.execution.concurrency import BoundedFanOut, retry_call
from tradeengine.execution.ledger import MemoryLedgerSink
from tradeengine.execution.models import ExitLabel, TradePlan
from tradeengine.execution.mt5_exec import MT5Engine

import unittest


T0 = pd.Timestamp("2024-01-01 00:00", tz="UTC")
PLAN = TradePlan(side='long', entry=100.0, stop=95.0, tp1=107.5, tp2=115.0,
                 exit_profile='pullback_two_step', reason='test')


def frame(n: int) -> pd.DataFrame:
    index = pd.DatetimeIndex([T0 + pd.Timedelta(hours=4 * i) for i in range(n)])
    return pd.DataFrame(
        {'open': 100.0, 'high': 100.5, 'low': 99.5, 'close': 100.0, 'volume': 10.0},
        index=index,
    )


def signal_on_third_bar(bars, params):
    if len(bars) == 3:
        return PLAN, 'test'
    return None, 'no-breakout'


class FakeSource(PriceSource):
    """Four bars per symbol (the last one forming).

    ``SLOW`` ticks and bars of symbols in ``hung_bars`` block until
    ``release`` is set.
    """

    def __init__(self, ticks=None, failing=(), hung_bars=()) -> None:
        self.ticks = ticks or {}
        self.failing = set(failing)
        self.hung_bars = set(hung_bars)
        self.release = threading.Event()
        self.bar_calls = {}
        self.tick_calls = {}

    def fetch_bars(self, symbol, limit):
        self.bar_calls[symbol] = self.bar_calls.get(symbol, 0) + 1
        if symbol in self.failing:
            raise ConnectionError(f"feed down for {symbol}")
        if symbol in self.hung_bars:
            self.release.wait(5)
        return frame(4)

    def fetch_tick(self, symbol):
        self.tick_calls[symbol] = self.tick_calls.get(symbol, 0) + 1
        if symbol == 'SLOW':
            self.release.wait(5)
        return self.ticks.get(symbol)


def make_config(state_file: str, symbols, concurrency: int = 4) -> Config:
    return Config(
        symbols=list(symbols),
        mode='paper',
        runtime=RuntimeConfig(concurrency=concurrency, retries=0, fetch_timeout_sec=0.3, state_file=state_file),
    )


class TestMT5EngineCycles(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.state_file = os.path.join(self.tmp.name, 'state.json')

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def make_engine(self, source, symbols, concurrency: int = 4):
        runner = MT5Engine(
            make_config(self.state_file, symbols, concurrency),
            price_source=source,
            sink=MemoryLedgerSink(),
            signal_fn=signal_on_third_bar,
        )
        # Cleanups run last-in first-out: blocked fetches are released first.
        self.addCleanup(runner.close)
        self.addCleanup(source.release.set)
        return runner

    def test_bar_cycle_isolates_failures_and_persists(self) -> None:
        source = FakeSource(failing={'BAD'})
        runner = self.make_engine(source, ['AAA', 'BAD'])
        outcomes = runner.run_bar_cycle()
        self.assertEqual(outcomes['AAA'].kind, 'opened')
        self.assertTrue(outcomes['BAD'].skipped.startswith('error'))
        self.assertEqual(source.bar_calls['BAD'], 1)
        self.assertTrue(os.path.exists(self.state_file))

        restored = self.make_engine(FakeSource(), ['AAA'])
        position = restored.engine.positions['AAA']
        self.assertEqual(position.qty, 20.0)
        self.assertEqual(position.stop, 95.0)
        self.assertEqual(restored.engine.last_processed['AAA'], T0 + pd.Timedelta(hours=8))
        self.assertEqual(restored.run_bar_cycle()['AAA'].skipped, 'already-processed')

    def test_hung_bar_fetch_does_not_hold_the_cycle(self) -> None:
        source = FakeSource(hung_bars={'HUNG'})
        runner = self.make_engine(source, ['AAA', 'HUNG'])

        started = time.monotonic()
        outcomes = runner.run_bar_cycle()
        elapsed = time.monotonic() - started

        self.assertLess(elapsed, 2.0)
        self.assertEqual(outcomes['AAA'].kind, 'opened')
        self.assertEqual(outcomes['HUNG'].skipped, 'fetch-stalled')
        self.assertTrue(os.path.exists(self.state_file))

        again = runner.run_bar_cycle()
        self.assertEqual(again['HUNG'].skipped, 'fetch-stalled')
        self.assertEqual(again['AAA'].skipped, 'already-processed')
        self.assertEqual(source.bar_calls['HUNG'], 1)

    def test_tick_cycle_skips_stalled_symbol(self) -> None:
        source = FakeSource(ticks={'AAA': 94.0, 'SLOW': 94.0})
        runner = self.make_engine(source, ['AAA', 'SLOW'])
        runner.run_bar_cycle()
        self.assertEqual(sorted(runner.engine.open_symbols()), ['AAA', 'SLOW'])

        outcomes = runner.run_tick_cycle()

        self.assertEqual(outcomes['AAA'].exits[0].label, ExitLabel.SL)
        self.assertIsNotNone(outcomes['AAA'].closed)
        self.assertEqual(outcomes['SLOW'].skipped, 'fetch-stalled')
        self.assertEqual(runner.engine.open_symbols(), ['SLOW'])
        self.assertAlmostEqual(runner.engine.equity, 9_900.0)

    def test_stalled_tick_is_not_resubmitted_across_cycles(self) -> None:
        source = FakeSource(ticks={'AAA': 101.0, 'SLOW': 101.0})
        runner = self.make_engine(source, ['AAA', 'SLOW'], concurrency=1)
        runner.run_bar_cycle()

        reasons = []
        for _ in range(4):
            outcomes = runner.run_tick_cycle()
            reasons.append((outcomes['AAA'].skipped, outcomes['SLOW'].skipped))

        self.assertEqual(reasons, [('position-open', 'fetch-stalled')] * 4)
        self.assertEqual(source.tick_calls['SLOW'], 1)
        self.assertEqual(source.tick_calls['AAA'], 4)

    def test_live_mode_requires_trading_flag(self) -> None:
        with self.assertRaises(RuntimeError):
            MT5Engine(make_config(self.state_file, ['AAA']), live=True, price_source=FakeSource())


class TestConcurrencyHelpers(unittest.TestCase):
    def test_retry_call_backs_off_exponentially(self) -> None:
        delays = []
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("down")
            return 'ok'

        self.assertEqual(retry_call(flaky, retries=2, base_delay=0.5, sleep=delays.append), 'ok')
        self.assertEqual(delays, [0.5, 1.0])

    def test_retry_call_reraises_last_error(self) -> None:
        def broken():
            raise ConnectionError("down")

        with self.assertRaises(ConnectionError):
            retry_call(broken, retries=1, base_delay=0.1, sleep=lambda _: None)

    def test_fan_out_splits_results_errors_and_stalls(self) -> None:
        release = threading.Event()
        calls = []

        def work(n):
            calls.append(n)
            if n == 0:
                raise ValueError("no price")
            if n == 3:
                release.wait(5)
            return n * 10

        fanout = BoundedFanOut(max_workers=4, timeout=0.3, name='test')
        self.addCleanup(fanout.shutdown)
        self.addCleanup(release.set)

        first = fanout.run([0, 1, 2, 3], work)
        self.assertEqual(first.results, {1: 10, 2: 20})
        self.assertIsInstance(first.errors[0], ValueError)
        self.assertEqual(first.stalled, [3])
        self.assertEqual(fanout.in_flight(), [3])

        second = fanout.run([1, 3], work)
        self.assertEqual(second.results, {1: 10})
        self.assertEqual(second.stalled, [3])
        self.assertEqual(calls.count(3), 1)

        release.set()
        deadline = time.monotonic() + 5
        while fanout.in_flight() and time.monotonic() < deadline:
            time.sleep(0.01)
        third = fanout.run([3], work)
        self.assertEqual(third.results, {3: 30})
        self.assertEqual(calls.count(3), 2)


if __name__ == '__main__':
    unittest.main()
