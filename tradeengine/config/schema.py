"""
Configuration schema and loader.

This module defines dataclasses that mirror the expected structure of
the YAML configuration file (`config.yaml`).  A helper function
`load_config()` reads a YAML file from disk, layers it over the
dataclass defaults and validates the result.

Example::

    symbols: [EURUSD, XAUUSD]
    timeframe: H4
    risk_pct: 0.01
    slippage_bps: 2
    exits:
      mode: auto          # auto | map | <profile name>
      chandelier_k: 3.5
    instruments:
      EURUSD: {qty_step: 0.01, min_qty: 0.01}
    runtime:
      concurrency: 4
      paper_realtime: true
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional
import yaml

from ..execution.models import ExitProfile, Instrument


EXIT_MODES = ('auto', 'map') + tuple(p.value for p in ExitProfile)
MIN_TICK_POLL_SEC = 0.2


@dataclass
class StrategyConfig:
    """Parameters of the Donchian/ATR breakout signal.

    Attributes
    ----------
    id : str
        Strategy identifier, also the key used by ``map`` exit mode.
    donchian_len : int
        Number of bars forming the breakout channel.
    atr_len : int
        ATR averaging length.
    atr_mult : float
        Stop distance in ATR multiples.
    tp1_rr, tp2_rr : float
        Take-profit distances in risk units.
    channel_len, vol_len : int
        Lookbacks for the exit-profile features.
    """

    id: str = "atr_breakout"
    donchian_len: int = 55
    atr_len: int = 14
    atr_mult: float = 2.0
    tp1_rr: float = 1.0
    tp2_rr: float = 2.0
    channel_len: int = 20
    vol_len: int = 20


@dataclass
class ExitConfig:
    """Exit profile selection and per-profile constants.

    Attributes
    ----------
    mode : str
        ``auto``, ``map`` or the name of a profile to force.
    profile_map : dict
        Strategy id to profile name, layered over the built-in map.
        The string form ``"atr_breakout:breakout_mm,other:trend_trail"``
        is accepted too.
    tp1_fraction : float
        Share of the original quantity closed at TP1.
    chandelier_k : float
        Trailing stop distance in ATR multiples for ``trend_trail``.
    hard_tp_rr_trend : float
        Far target of ``trend_trail`` in risk units.
    time_stop_bars : int
        Bars after which ``breakout_mm`` gives up on a stalled trade.
    time_stop_min_r : float
        Favourable excursion (in R) a trade must reach to avoid the time stop.
    mr_tp_rr : float
        Target of ``mean_revert`` in risk units.
    atr_tp_mult : float
        ATR multiple compared with the measured move in ``breakout_mm``.
    """

    mode: str = "auto"
    profile_map: Dict[str, str] = field(default_factory=dict)
    tp1_fraction: float = 0.5
    chandelier_k: float = 3.5
    hard_tp_rr_trend: float = 5.0
    time_stop_bars: int = 6
    time_stop_min_r: float = 0.5
    mr_tp_rr: float = 1.0
    atr_tp_mult: float = 2.0


@dataclass
class InstrumentConfig:
    """Quantity constraints of one symbol."""

    qty_step: Optional[float] = None
    min_qty: Optional[float] = None
    price_precision: Optional[int] = None

    def to_instrument(self) -> Instrument:
        return Instrument(qty_step=self.qty_step, min_qty=self.min_qty, price_precision=self.price_precision)


@dataclass
class RuntimeConfig:
    """Scheduling, concurrency and persistence settings.

    Attributes
    ----------
    concurrency : int
        Maximum number of symbols processed at once.
    retries : int
        Extra attempts for a failed bar fetch.
    retry_base_delay : float
        First backoff delay in seconds, doubled on each retry.
    bar_poll_sec : float
        Pause between bar-close cycles.
    tick_poll_sec : float
        Pause between real-time tick cycles (at least 0.2 s).
    fetch_timeout_sec : float
        Time budget for one price fetch before the symbol is skipped
        for that cycle.
    bars_limit : int
        Number of bars requested per fetch.
    paper_realtime : bool
        Run the tick watcher alongside the bar-close loop in paper mode.
    trade_enabled : bool
        Must be true for live mode to place orders.
    state_file : str
        JSON file with positions and equity between restarts.
    ledger_dir : str
        Directory of the CSV ledger written in paper mode.
    """

    concurrency: int = 4
    retries: int = 2
    retry_base_delay: float = 0.5
    bar_poll_sec: float = 60.0
    tick_poll_sec: float = 1.0
    fetch_timeout_sec: float = 5.0
    bars_limit: int = 250
    paper_realtime: bool = False
    trade_enabled: bool = False
    state_file: str = "state.json"
    ledger_dir: str = "paper_outputs"


@dataclass
class MT5Config:
    """Holds parameters required to connect to a MetaTrader 5 terminal.

    Attributes
    ----------
    login : int
        Account login number.  Use `0` when running offline backtests.
    password : str
        Password for the account.
    server : str
        Broker server name.
    path : str
        File system path to the terminal executable.
    deviation : int
        Maximum accepted price deviation in points for market orders.
    magic : int
        Identifier stamped on orders sent by this program.
    """

    login: int = 0
    password: str = ""
    server: str = ""
    path: str = ""
    deviation: int = 20
    magic: int = 240901


@dataclass
class DataConfig:
    """Data source configuration.

    Attributes
    ----------
    csv_dir : str
        Directory containing one CSV file per symbol for backtests.
    timezone : str
        IANA timezone name used to localise timestamps.
    results_dir : str
        Where backtest reports are written.
    """

    csv_dir: str = "data"
    timezone: str = "UTC"
    results_dir: str = "results"


@dataclass
class Config:
    """Root configuration for the trading program.

    Attributes
    ----------
    symbols : List[str]
        Instrument symbols to trade.
    timeframe : str
        Bar timeframe, e.g. ``H4``.
    mode : str
        ``backtest``, ``paper``, ``live`` or ``realtime``.
    initial_equity : float
        Starting equity for backtests and paper trading.
    risk_pct : float
        Fraction of equity risked per trade (``0.01`` = 1 %).
    slippage_bps : float
        Linear slippage applied to every fill, in basis points.
    """

    symbols: List[str] = field(default_factory=lambda: ["EURUSD"])
    timeframe: str = "H4"
    mode: str = "backtest"
    initial_equity: float = 10_000.0
    risk_pct: float = 0.01
    slippage_bps: float = 0.0
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    exits: ExitConfig = field(default_factory=ExitConfig)
    instruments: Dict[str, InstrumentConfig] = field(default_factory=dict)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    mt5: MT5Config = field(default_factory=MT5Config)
    data: DataConfig = field(default_factory=DataConfig)

    def instrument(self, symbol: str) -> Optional[Instrument]:
        cfg = self.instruments.get(symbol)
        return cfg.to_instrument() if cfg is not None else None


def _merge_dict(defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge two dictionaries.

    The values in `override` take precedence over those in `defaults`.
    This helper is used when loading YAML into nested dataclasses.
    """
    result: Dict[str, Any] = defaults.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def parse_profile_map(raw: Any) -> Dict[str, str]:
    """Normalise a profile map given as a dict or ``"a:b,c:d"`` string."""
    if not raw:
        return {}
    if isinstance(raw, dict):
        return {str(k).strip(): str(v).strip().lower() for k, v in raw.items()}
    mapping: Dict[str, str] = {}
    for item in str(raw).split(','):
        if ':' not in item:
            continue
        key, value = item.split(':', 1)
        if key.strip() and value.strip():
            mapping[key.strip()] = value.strip().lower()
    return mapping


def validate_config(cfg: Config) -> Config:
    """Check cross-field constraints, raising ``ValueError`` on the first problem."""
    if not 0 < cfg.risk_pct <= 1:
        raise ValueError(f"risk_pct must be in (0, 1], got {cfg.risk_pct}")
    if cfg.initial_equity < 0:
        raise ValueError("initial_equity must be non-negative")
    if cfg.slippage_bps < 0:
        raise ValueError("slippage_bps must be non-negative")
    if cfg.mode not in ('backtest', 'paper', 'live', 'realtime'):
        raise ValueError(f"Unknown mode: {cfg.mode}")
    if cfg.exits.mode not in EXIT_MODES:
        raise ValueError(f"Unknown exit mode {cfg.exits.mode!r}; expected one of {EXIT_MODES}")
    for sid, name in cfg.exits.profile_map.items():
        if name not in EXIT_MODES[2:]:
            raise ValueError(f"Unknown exit profile {name!r} for strategy {sid!r}")
    if not 0 < cfg.exits.tp1_fraction <= 1:
        raise ValueError("exits.tp1_fraction must be in (0, 1]")
    if cfg.exits.time_stop_bars < 1:
        raise ValueError("exits.time_stop_bars must be at least 1")
    if cfg.runtime.concurrency < 1:
        raise ValueError("runtime.concurrency must be at least 1")
    if cfg.runtime.retries < 0:
        raise ValueError("runtime.retries must be non-negative")
    return cfg


def load_config(path: str) -> Config:
    """Load a configuration file from the given YAML path.

    Parameters
    ----------
    path : str
        Path to the YAML file.

    Returns
    -------
    Config
        A populated configuration object.  Missing fields are filled with
        the defaults defined in the dataclasses.

    Raises
    ------
    ValueError
        If a value is out of range or names an unknown exit profile.
    """
    with open(path, "r", encoding="utf-8") as fh:
        raw: Dict[str, Any] = yaml.safe_load(fh) or {}
    return config_from_dict(raw)


def config_from_dict(raw: Dict[str, Any]) -> Config:
    """Build a validated `Config` from a plain (possibly partial) mapping."""
    defaults = asdict(Config())
    defaults['instruments'] = {}
    merged = _merge_dict(defaults, raw)

    exits = dict(merged['exits'])
    exits['mode'] = str(exits.get('mode', 'auto')).strip().lower()
    exits['profile_map'] = parse_profile_map(exits.get('profile_map'))
    runtime = dict(merged['runtime'])
    runtime['tick_poll_sec'] = max(MIN_TICK_POLL_SEC, float(runtime.get('tick_poll_sec', 1.0)))

    cfg = Config(
        symbols=[str(s) for s in merged.get('symbols', [])],
        timeframe=str(merged.get('timeframe', 'H4')).upper(),
        mode=str(merged.get('mode', 'backtest')).lower(),
        initial_equity=float(merged.get('initial_equity', 10_000.0)),
        risk_pct=float(merged.get('risk_pct', 0.01)),
        slippage_bps=float(merged.get('slippage_bps', 0.0)),
        strategy=StrategyConfig(**merged['strategy']),
        exits=ExitConfig(**exits),
        instruments={
            str(sym): InstrumentConfig(**(values or {}))
            for sym, values in (merged.get('instruments') or {}).items()
        },
        runtime=RuntimeConfig(**runtime),
        mt5=MT5Config(**merged['mt5']),
        data=DataConfig(**merged['data']),
    )
    return validate_config(cfg)
