"""
Application entry point.

This module defines a simple command-line interface for running the
trading program in different modes:

- ``backtest`` replays CSV history for every symbol and writes reports,
- ``paper`` simulates positions on live MetaTrader 5 data,
- ``live`` sends bracket orders through MetaTrader 5,
- ``realtime`` runs only the tick watcher over restored paper positions.
"""

from __future__ import annotations

import argparse
import logging
from typing import List, Optional

from .config.schema import load_config
from .execution.backtest_exec import BacktestEngine
from .execution.mt5_exec import MT5Engine
from .reporting.report import generate_backtest_report


logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def main(argv: Optional[List[str]] = None) -> None:
    """Parse command-line arguments and dispatch to the appropriate mode."""
    parser = argparse.ArgumentParser(description="Position lifecycle and exit simulation engine")
    parser.add_argument('mode', choices=['backtest', 'paper', 'live', 'realtime'], help="Operating mode")
    parser.add_argument('--config', default='config.yaml', help="Path to configuration YAML file")
    parser.add_argument('--out', default=None, help="Directory for backtest reports")
    parser.add_argument('-v', '--verbose', action='store_true', help="Enable debug logging")
    args = parser.parse_args(argv)

    _setup_logging(args.verbose)

    config = load_config(args.config)
    # Override mode from CLI if provided
    config.mode = args.mode

    if args.mode == 'backtest':
        out_dir = args.out or config.data.results_dir
        logger.info("Running backtest...")
        results = BacktestEngine(config).run()
        for symbol, result in results.items():
            generate_backtest_report(
                result.trades,
                result.equity_curve,
                out_dir=out_dir,
                exits=result.exits,
                summary=result.summary,
                prefix=f"{symbol}_",
            )
        logger.info("Backtest complete. Results saved to the '%s' directory.", out_dir)
        return

    live_flag = args.mode == 'live'
    logger.info("Starting %s trading via MetaTrader 5...", args.mode)
    engine = MT5Engine(config, live=live_flag)
    engine.run(realtime_only=args.mode == 'realtime')


if __name__ == '__main__':
    main()
