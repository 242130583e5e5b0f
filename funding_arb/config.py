from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, cast

import yaml

from .errors import ConfigurationError


KNOWN_VENUES = ("hyperliquid", "dydx", "drift")
NO_VENUE = "none"

DEFAULT_MARKETS = ("SOL-PERP", "ETH-PERP", "BTC-PERP")
DEFAULT_CONFIG_PATH = "config.yaml"


@dataclass(frozen=True)
class Config:
    raw: Dict[str, Any]

    @staticmethod
    def load(path: str = DEFAULT_CONFIG_PATH) -> "Config":
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Config file not found: {p.resolve()}")
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config root must be a mapping, got: {type(data).__name__}")
        return Config(raw=data)

    def get(self, *keys: str, default: Any = None) -> Any:
        d: Any = self.raw
        for k in keys:
            if not isinstance(d, dict) or k not in d:
                return default
            d = d[k]
        return d


@dataclass(frozen=True)
class BotConfig:
    markets: Tuple[str, ...] = DEFAULT_MARKETS

    # strategy thresholds, APR in percent
    enter_threshold_pct: float = 10.0
    exit_threshold_pct: Optional[float] = None  # None => 60% of enter
    cooldown_seconds: float = 300.0
    epsilon: float = 1e-6

    # sizing
    notional_usd: float = 500.0

    # venues
    primary_venue: str = "hyperliquid"
    cross_venue_enabled: bool = False
    secondary_venue: str = NO_VENUE

    # runtime
    paper_mode: bool = True
    poll_seconds: float = 60.0

    # networking hardening
    request_timeout_seconds: float = 10.0
    retry_attempts: int = 3
    backoff_base_seconds: float = 0.5

    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if self.exit_threshold_pct is None:
            object.__setattr__(self, "exit_threshold_pct", default_exit_threshold(self.enter_threshold_pct))
        self.validate()

    @property
    def exit_pct(self) -> float:
        return cast(float, self.exit_threshold_pct)

    @property
    def cross_active(self) -> bool:
        return self.cross_venue_enabled and self.secondary_venue != NO_VENUE

    def validate(self) -> None:
        if not self.markets:
            raise ConfigurationError("markets must not be empty")
        for name in (
            "enter_threshold_pct",
            "exit_threshold_pct",
            "cooldown_seconds",
            "epsilon",
            "notional_usd",
            "poll_seconds",
            "request_timeout_seconds",
            "backoff_base_seconds",
        ):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
                raise ConfigurationError(f"{name} must be a finite number, got {value!r}")
        if self.exit_pct >= self.enter_threshold_pct:
            raise ConfigurationError(
                f"exit_threshold_pct={self.exit_pct} must be below enter_threshold_pct={self.enter_threshold_pct}"
            )
        if self.cooldown_seconds < 0:
            raise ConfigurationError("cooldown_seconds must be >= 0")
        if self.epsilon < 0:
            raise ConfigurationError("epsilon must be >= 0")
        if self.notional_usd <= 0:
            raise ConfigurationError("notional_usd must be > 0")
        if self.poll_seconds <= 0:
            raise ConfigurationError("poll_seconds must be > 0")
        if self.retry_attempts < 1:
            raise ConfigurationError("retry_attempts must be >= 1")
        if self.primary_venue not in KNOWN_VENUES:
            raise ConfigurationError(f"unknown primary_venue={self.primary_venue!r}")
        if self.secondary_venue != NO_VENUE and self.secondary_venue not in KNOWN_VENUES:
            raise ConfigurationError(f"unknown secondary_venue={self.secondary_venue!r}")
        if self.secondary_venue == self.primary_venue:
            raise ConfigurationError("secondary_venue must differ from primary_venue")


def default_exit_threshold(enter_pct: float) -> float:
    return max(0.0, round(enter_pct * 0.6, 2))


# --------------------------------------------------
# Parsing helpers
# --------------------------------------------------

def norm_pct(value: Any) -> float:
    """'10%' / ' 10 ' / 10 -> 10.0. Raises ConfigurationError on anything else."""
    if isinstance(value, bool):
        raise ConfigurationError(f"Bad percentage value: {value!r}")
    text = str(value if value is not None else "").strip().replace("%", "")
    try:
        n = float(text)
    except ValueError:
        raise ConfigurationError(f"Bad percentage value: {value!r}") from None
    if not math.isfinite(n):
        raise ConfigurationError(f"Bad percentage value: {value!r}")
    return n


def parse_float(name: str, value: Any) -> float:
    try:
        n = float(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"Invalid number for {name}: {value!r}") from None
    if not math.isfinite(n):
        raise ConfigurationError(f"Invalid number for {name}: {value!r}")
    return n


def parse_int(name: str, value: Any) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"Invalid integer for {name}: {value!r}") from None


def parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "y", "on"):
        return True
    if text in ("0", "false", "no", "n", "off", ""):
        return False
    raise ConfigurationError(f"Invalid boolean for {name}: {value!r}")


def parse_markets(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        raise ConfigurationError(f"markets must be a list or comma-separated string, got {value!r}")
    seen: Dict[str, None] = {}
    for item in items:
        m = item.strip().upper()
        if m:
            seen.setdefault(m, None)
    return tuple(seen)


def parse_venue(value: Any) -> str:
    return str(value).strip().lower()


# --------------------------------------------------
# Loading: defaults < YAML < env
# --------------------------------------------------

# (env var, yaml path, field, parser)
_SOURCES = (
    ("FRA_MARKETS", ("runtime", "markets"), "markets", lambda n, v: parse_markets(v)),
    ("FRA_ENTER_APR", ("strategy", "enter_apr_pct"), "enter_threshold_pct", lambda n, v: norm_pct(v)),
    ("FRA_EXIT_APR", ("strategy", "exit_apr_pct"), "exit_threshold_pct", lambda n, v: norm_pct(v)),
    ("FRA_COOLDOWN_SEC", ("strategy", "cooldown_seconds"), "cooldown_seconds", parse_float),
    ("FRA_EPSILON", ("strategy", "epsilon"), "epsilon", parse_float),
    ("FRA_NOTIONAL", ("sizing", "notional_usd"), "notional_usd", parse_float),
    ("FRA_EXCH_A", ("venues", "primary"), "primary_venue", lambda n, v: parse_venue(v)),
    ("FRA_PERP_PERP", ("venues", "cross_enabled"), "cross_venue_enabled", parse_bool),
    ("FRA_EXCH_B", ("venues", "secondary"), "secondary_venue", lambda n, v: parse_venue(v)),
    ("FRA_PAPER", ("runtime", "paper"), "paper_mode", parse_bool),
    ("FRA_POLL_SECONDS", ("runtime", "poll_seconds"), "poll_seconds", parse_float),
    ("FRA_REQUEST_TIMEOUT", ("networking", "request_timeout_seconds"), "request_timeout_seconds", parse_float),
    ("FRA_RETRY_ATTEMPTS", ("networking", "retry_attempts"), "retry_attempts", parse_int),
    ("FRA_BACKOFF_BASE", ("networking", "backoff_base_seconds"), "backoff_base_seconds", parse_float),
)


def load_bot_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> BotConfig:
    """
    Build BotConfig from defaults, then the YAML file (if given / present),
    then FRA_* environment variables. Any malformed value raises ConfigurationError.
    """
    env = os.environ if env is None else env

    cfg: Optional[Config] = None
    if path is not None:
        cfg = Config.load(path)

    values: Dict[str, Any] = {}
    for env_name, yaml_path, field_name, parser in _SOURCES:
        if cfg is not None:
            raw = cfg.get(*yaml_path, default=None)
            if raw is not None:
                values[field_name] = parser(field_name, raw)
        raw_env = env.get(env_name)
        if raw_env is None and env_name == "FRA_ENTER_APR":
            raw_env = env.get("FRA_MIN_APR")
        if raw_env is not None and str(raw_env).strip():
            values[field_name] = parser(field_name, raw_env)

    if cfg is not None:
        values["extra"] = dict(cfg.raw)
    return BotConfig(**values)
