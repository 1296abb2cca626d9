"""
Timestamp helpers.

All internal timestamps are timezone-aware ``pandas.Timestamp`` values.
These helpers normalise naive inputs (assumed UTC) and convert between
zones, and are used wherever timestamps enter from files, JSON state
or the broker.
"""

from __future__ import annotations

from typing import Optional
import pandas as pd


def to_timezone(ts, tz_name: str) -> pd.Timestamp:
    """Convert ``ts`` to the specified timezone.

    If the timestamp is naive, it is assumed to be in UTC before
    conversion.
    """
    if not isinstance(ts, pd.Timestamp):
        ts = pd.Timestamp(ts)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.tz_convert(tz_name)


def utc_now() -> pd.Timestamp:
    return pd.Timestamp.now(tz="UTC")


def parse_timestamp(value) -> Optional[pd.Timestamp]:
    """Parse an ISO string (or ``None``) from persisted state into a UTC timestamp."""
    if value is None or value == "":
        return None
    return to_timezone(value, "UTC")
