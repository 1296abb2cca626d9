import os
import sys
import pandas as pd

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from tradeengine.execution.models import ExitProfile
from tradeengine.strategy.exit_profile import ExitFeatures, choose_exit_profile, compute_features

import unittest


class TestChooseExitProfile(unittest.TestCase):
    def test_breakout_at_channel_edge_with_volume(self) -> None:
        feat = ExitFeatures(vwap_dist=0.02, vol_ratio=1.6, channel_pos=0.97)
        self.assertIs(choose_exit_profile(feat, 'long'), ExitProfile.BREAKOUT_MM)
        short_feat = ExitFeatures(vwap_dist=0.0, vol_ratio=1.5, channel_pos=0.03)
        self.assertIs(choose_exit_profile(short_feat, 'short'), ExitProfile.BREAKOUT_MM)

    def test_edge_is_side_specific(self) -> None:
        feat = ExitFeatures(vwap_dist=0.0, vol_ratio=2.0, channel_pos=0.97)
        self.assertIs(choose_exit_profile(feat, 'short'), ExitProfile.TREND_TRAIL)

    def test_mean_revert_on_vwap_stretch_with_quiet_volume(self) -> None:
        feat = ExitFeatures(vwap_dist=-0.012, vol_ratio=1.0, channel_pos=0.5)
        self.assertIs(choose_exit_profile(feat, 'long'), ExitProfile.MEAN_REVERT)

    def test_default_is_trend_trail(self) -> None:
        feat = ExitFeatures(vwap_dist=0.012, vol_ratio=1.3, channel_pos=0.5)
        self.assertIs(choose_exit_profile(feat, 'long'), ExitProfile.TREND_TRAIL)
        self.assertIs(choose_exit_profile(ExitFeatures(), 'short'), ExitProfile.TREND_TRAIL)

    def test_map_mode_and_fallback(self) -> None:
        feat = ExitFeatures()
        self.assertIs(choose_exit_profile(feat, 'long', 'map', 'atr_breakout'), ExitProfile.BREAKOUT_MM)
        self.assertIs(choose_exit_profile(feat, 'long', 'map', 'unknown'), ExitProfile.PULLBACK_TWO_STEP)
        self.assertIs(
            choose_exit_profile(feat, 'long', 'map', 'mine', {'mine': 'mean_revert'}),
            ExitProfile.MEAN_REVERT,
        )

    def test_explicit_profile_and_unknown_name(self) -> None:
        feat = ExitFeatures(vwap_dist=0.02, vol_ratio=1.0)
        self.assertIs(choose_exit_profile(feat, 'long', 'pullback_two_step'), ExitProfile.PULLBACK_TWO_STEP)
        # Unrecognised names behave like auto.
        self.assertIs(choose_exit_profile(feat, 'long', 'nonsense'), ExitProfile.MEAN_REVERT)


class TestComputeFeatures(unittest.TestCase):
    def test_features_on_synthetic_bars(self) -> None:
        index = pd.date_range("2024-01-01", periods=30, freq="4h", tz="UTC")
        closes = [100.0 + i for i in range(30)]
        bars = pd.DataFrame(
            {
                'open': closes,
                'high': [c + 1.0 for c in closes],
                'low': [c - 1.0 for c in closes],
                'close': closes,
                'volume': [100.0] * 29 + [300.0],
            },
            index=index,
        )
        feat = compute_features(bars, atr_len=14, channel_len=20, vol_len=20)
        self.assertGreater(feat.atr_pct, 0.0)
        self.assertGreater(feat.vol_ratio, 2.0)
        self.assertIsNotNone(feat.channel_pos)
        self.assertGreater(feat.channel_pos, 0.9)

    def test_short_history_degrades_to_neutral(self) -> None:
        index = pd.date_range("2024-01-01", periods=3, freq="4h", tz="UTC")
        bars = pd.DataFrame(
            {'open': [1.0] * 3, 'high': [1.0] * 3, 'low': [1.0] * 3, 'close': [1.0] * 3, 'volume': [0.0] * 3},
            index=index,
        )
        feat = compute_features(bars)
        self.assertEqual(feat.atr_pct, 0.0)
        self.assertEqual(feat.vol_ratio, 1.0)
        self.assertIsNone(feat.channel_pos)


if __name__ == '__main__':
    unittest.main()
