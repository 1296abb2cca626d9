"""
CSV data loader.

This module provides a class to load historical OHLCV bars from CSV
files for backtesting.  Two layouts are recognised:

```
time,open,high,low,close,volume
```

and the tab-separated MetaTrader 5 export with ``<DATE>``, ``<TIME>``,
``<OPEN>``, ``<HIGH>``, ``<LOW>``, ``<CLOSE>`` and ``<TICKVOL>`` or
``<VOL>`` columns.  Timestamps without a timezone are localised to the
configured timezone; the returned frame always has a ``volume`` column
(zero when the file has none).
"""

from __future__ import annotations

import logging
from pathlib import Path
import pandas as pd


logger = logging.getLogger(__name__)

OHLCV = ['open', 'high', 'low', 'close', 'volume']
MT5_REQUIRED = ["<DATE>", "<TIME>", "<OPEN>", "<HIGH>", "<LOW>", "<CLOSE>"]


class CSVDataLoader:
    """Load OHLCV data from CSV files for backtesting.

    Parameters
    ----------
    csv_dir : str
        Directory where the CSV files are located.  Each symbol's file
        must be named `{SYMBOL}.csv`.
    timezone : str
        IANA timezone name used to localise timestamps.
    """

    def __init__(self, csv_dir: str, timezone: str) -> None:
        self.csv_dir = Path(csv_dir)
        self.timezone = timezone

    def load(self, symbol: str) -> pd.DataFrame:
        """Read the bars of ``symbol``.

        Raises
        ------
        FileNotFoundError
            If ``{csv_dir}/{symbol}.csv`` does not exist.
        ValueError
            If the file matches neither layout or has unparseable times.
        """
        file_path = self.csv_dir / f"{symbol}.csv"
        if not file_path.exists():
            raise FileNotFoundError(f"CSV file not found for symbol {symbol}: {file_path}")

        with file_path.open("r", encoding="utf-8") as fh:
            header = fh.readline()
        if "<DATE>" in header:
            df = self._load_mt5(file_path, symbol)
        else:
            df = self._load_standard(file_path, symbol)
        logger.debug("Loaded %d bars for %s from %s", len(df), symbol, file_path)
        return df

    def _localise(self, index: pd.DatetimeIndex) -> pd.DatetimeIndex:
        if index.tz is None:
            return index.tz_localize(self.timezone)
        return index.tz_convert(self.timezone)

    def _load_standard(self, file_path: Path, symbol: str) -> pd.DataFrame:
        df = pd.read_csv(file_path)
        df.columns = [c.strip().lower() for c in df.columns]
        if "time" not in df.columns:
            raise ValueError(f"Unrecognized CSV format for {symbol}: no 'time' column in {list(df.columns)}")
        if "volume" not in df.columns:
            df["volume"] = df["tick_volume"] if "tick_volume" in df.columns else 0.0
        if pd.api.types.is_numeric_dtype(df["time"]):
            times = pd.to_datetime(df["time"], unit="s", utc=True)
        else:
            times = pd.to_datetime(df["time"], errors="raise")
        df = df.set_index(pd.DatetimeIndex(times)).sort_index()
        df.index = self._localise(df.index)
        df.index.name = "time"
        return df[OHLCV].astype(float)

    def _load_mt5(self, file_path: Path, symbol: str) -> pd.DataFrame:
        df = pd.read_csv(file_path, sep="\t", engine="python")
        df.columns = [c.strip() for c in df.columns]
        missing = [c for c in MT5_REQUIRED if c not in df.columns]
        if missing:
            raise ValueError(
                f"Unrecognized CSV format for {symbol}. Missing columns: {missing}. "
                f"Found columns: {list(df.columns)}"
            )

        dt = df["<DATE>"].astype(str).str.strip() + " " + df["<TIME>"].astype(str).str.strip()
        ts = pd.to_datetime(dt, format="%Y.%m.%d %H:%M:%S", errors="coerce")
        if ts.isna().any():
            ts = pd.to_datetime(dt, errors="coerce")
        if ts.isna().any():
            bad = dt[ts.isna()].head(5).tolist()
            raise ValueError(f"Could not parse MT5 DATE/TIME for {symbol}. Examples: {bad}")

        volume_col = next((c for c in ("<TICKVOL>", "<VOL>") if c in df.columns), None)
        out = pd.DataFrame(
            {
                "open": df["<OPEN>"].astype(float).values,
                "high": df["<HIGH>"].astype(float).values,
                "low": df["<LOW>"].astype(float).values,
                "close": df["<CLOSE>"].astype(float).values,
                "volume": df[volume_col].astype(float).values if volume_col else 0.0,
            },
            index=pd.DatetimeIndex(ts),
        ).sort_index()
        # Terminal exports carry broker-local times without an offset.
        out.index = self._localise(out.index)
        out.index.name = "time"
        return out
