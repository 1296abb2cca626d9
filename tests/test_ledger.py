import os
import sys
import tempfile
import pandas as pd

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from tradeengine.config.schema import ExitConfig
from tradeengine.exceptions import PositionInvariantError
from tradeengine.execution.ledger import Account, Ledger, MemoryLedgerSink
from tradeengine.execution.models import Bar, ExitProfile, Position, side_sign
from tradeengine.execution.state_machine import PositionStateMachine
from tradeengine.utils.persistence import CSVLedgerSink

import unittest


T0 = pd.Timestamp("2024-03-01 00:00", tz="UTC")


def make_position(sm: PositionStateMachine, entry_exec: float = 100.0) -> Position:
    pos = Position(
        pos_id='P-LEDGER-1', symbol='TEST', side='long', qty_orig=20.0, qty=20.0,
        entry=100.0, entry_exec=entry_exec, stop=95.0, initial_stop=95.0,
        tp1=107.5, tp2=115.0, target=115.0, profile=ExitProfile.PULLBACK_TWO_STEP,
        atr=5.0, opened_at=T0,
    )
    sm.init_levels(pos)
    return pos


def run_scenario(ledger: Ledger, sm: PositionStateMachine, pos: Position):
    first = sm.evaluate_bar_close(pos, Bar(T0 + pd.Timedelta(hours=4), 101.0, 108.0, 101.0, 106.0))
    partial = ledger.record_exits(pos, first)
    second = sm.evaluate_bar_close(pos, Bar(T0 + pd.Timedelta(hours=8), 104.0, 104.0, 100.0, 101.0))
    return partial, ledger.record_exits(pos, second)


class TestLedger(unittest.TestCase):
    def test_equity_moves_once_on_full_close(self) -> None:
        sink = MemoryLedgerSink()
        ledger = Ledger(Account(10_000.0), sink)
        sm = PositionStateMachine(ExitConfig())
        pos = make_position(sm)
        ledger.record_entry(pos)

        partial, trade = run_scenario(ledger, sm, pos)
        self.assertIsNone(partial)
        self.assertIsNotNone(trade)
        self.assertAlmostEqual(trade.pnl, 75.0)
        self.assertAlmostEqual(ledger.account.equity, 10_075.0)
        self.assertEqual(trade.labels, 'TP1|BE')
        self.assertAlmostEqual(trade.exit_avg, 103.75)
        self.assertEqual(len(sink.exits), 2)
        self.assertEqual(len(sink.trades), 1)
        self.assertEqual(len(sink.equity_curve), 1)
        self.assertAlmostEqual(sink.equity_curve[0].equity, 10_075.0)
        self.assertAlmostEqual(trade.return_pct, 75.0 / 10_000.0)

    def test_exit_average_reproduces_pnl(self) -> None:
        sm = PositionStateMachine(ExitConfig(), slippage_bps=7)
        ledger = Ledger(Account(10_000.0))
        pos = make_position(sm, entry_exec=100.07)
        _, trade = run_scenario(ledger, sm, pos)
        recomputed = (trade.exit_avg - trade.entry_exec) * side_sign(trade.side) * trade.qty
        self.assertAlmostEqual(recomputed, trade.pnl, places=6)

    def test_settling_twice_is_an_invariant_violation(self) -> None:
        ledger = Ledger(Account(10_000.0))
        sm = PositionStateMachine(ExitConfig())
        pos = make_position(sm)
        run_scenario(ledger, sm, pos)
        with self.assertRaises(PositionInvariantError):
            ledger.record_exits(pos, [])
        self.assertAlmostEqual(ledger.account.equity, 10_075.0)
        self.assertTrue(pos.settled)

    def test_settled_flag_travels_with_the_position(self) -> None:
        sm = PositionStateMachine(ExitConfig())
        pos = make_position(sm)
        run_scenario(Ledger(Account(10_000.0)), sm, pos)
        other = Ledger(Account(10_000.0))
        with self.assertRaises(PositionInvariantError):
            other.record_exits(pos, [])
        self.assertEqual(other.account.equity, 10_000.0)


class TestCSVLedgerSink(unittest.TestCase):
    def test_writes_append_only_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sink = CSVLedgerSink(tmp)
            ledger = Ledger(Account(10_000.0), sink)
            sm = PositionStateMachine(ExitConfig())
            pos = make_position(sm)
            ledger.record_entry(pos)
            run_scenario(ledger, sm, pos)

            exits = pd.read_csv(os.path.join(tmp, 'exits.csv'))
            trades = pd.read_csv(os.path.join(tmp, 'trades.csv'))
            equity = pd.read_csv(os.path.join(tmp, 'equity.csv'))
            entries = pd.read_csv(os.path.join(tmp, 'entries.csv'))
            self.assertEqual(list(exits['label']), ['TP1', 'BE'])
            self.assertEqual(len(trades), 1)
            self.assertEqual(trades['labels'].iloc[0], 'TP1|BE')
            self.assertAlmostEqual(float(equity['equity'].iloc[0]), 10_075.0)
            self.assertEqual(entries['pos_id'].iloc[0], 'P-LEDGER-1')


if __name__ == '__main__':
    unittest.main()
