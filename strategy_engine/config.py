"""
Strategy Engine - Configuration.

============================================================
PURPOSE
============================================================
Strategy settings: definitions, validation and the frozen
per-cycle snapshot.

Settings are stored as strings (database or environment).
Every key has a definition with its default, type and bounds.
Parsing failures raise InvalidSettingError; safety-relevant
values are never defaulted silently.

============================================================
CONFIGURATION PHILOSOPHY
============================================================
- One snapshot per cycle, never mutated mid-cycle
- Conservative defaults
- Cross-field rules checked at construction

============================================================
"""

import re
from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from core.exceptions import InvalidSettingError


_SYMBOL_PATTERN = re.compile(r"^[A-Z0-9]+-[A-Z]+$")
_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


# ============================================================
# PARSERS
# ============================================================


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _parse_int(raw: str) -> int:
    value = Decimal(raw.strip())
    if value != value.to_integral_value():
        raise ValueError(f"not an integer: {raw!r}")
    return int(value)


def _parse_decimal(raw: str) -> Decimal:
    value = Decimal(raw.strip())
    if not value.is_finite():
        raise ValueError(f"not finite: {raw!r}")
    return value


def _parse_universe(raw: str) -> Tuple[str, ...]:
    symbols = tuple(s.strip().upper() for s in raw.split(",") if s.strip())
    if not symbols:
        raise ValueError("universe is empty")
    for symbol in symbols:
        if not _SYMBOL_PATTERN.match(symbol):
            raise ValueError(f"symbol {symbol!r} is not BASE-QUOTE")
    return tuple(dict.fromkeys(symbols))


# ============================================================
# SETTING DEFINITIONS
# ============================================================


@dataclass(frozen=True)
class SettingDefinition:
    """Schema of one strategy setting."""

    key: str
    field_name: str
    """StrategySettings attribute."""

    default: str
    parser: Callable[[str], Any]
    minimum: Optional[Decimal] = None
    maximum: Optional[Decimal] = None
    min_exclusive: bool = False
    max_exclusive: bool = False
    description: str = ""

    @property
    def is_numeric(self) -> bool:
        return self.parser in (_parse_int, _parse_decimal)

    def parse(self, raw: Any) -> Any:
        """
        Parse and bounds-check a raw value.

        Raises:
            InvalidSettingError: unparsable or out of bounds
        """
        if isinstance(raw, bool) and self.parser is _parse_bool:
            return raw
        text = ",".join(raw) if isinstance(raw, (list, tuple)) else str(raw)
        try:
            value = self.parser(text)
        except (ValueError, InvalidOperation) as e:
            raise InvalidSettingError(
                f"Invalid value for {self.key}: {e}",
                config_key=self.key,
                actual_value=raw,
            ) from e

        if self.is_numeric:
            self._check_bounds(Decimal(value))
        return value

    def _check_bounds(self, value: Decimal) -> None:
        low, high = self.minimum, self.maximum
        if low is not None and (value < low or (self.min_exclusive and value == low)):
            op = ">" if self.min_exclusive else ">="
            raise InvalidSettingError(
                f"{self.key} must be {op} {low}, got {value}",
                config_key=self.key,
                actual_value=str(value),
            )
        if high is not None and (value > high or (self.max_exclusive and value == high)):
            op = "<" if self.max_exclusive else "<="
            raise InvalidSettingError(
                f"{self.key} must be {op} {high}, got {value}",
                config_key=self.key,
                actual_value=str(value),
            )

    def format(self, value: Any) -> str:
        """String form for storage."""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (list, tuple)):
            return ",".join(value)
        if isinstance(value, Decimal):
            return _format_decimal(value)
        return str(value)


def _format_decimal(value: Decimal) -> str:
    text = format(value.normalize(), "f")
    return text


def _d(value: str) -> Decimal:
    return Decimal(value)


_DEFINITIONS = [
    SettingDefinition("UNIVERSE", "universe", "BTC-USD,ETH-USD", _parse_universe,
                      description="Tradable symbols, comma-separated BASE-QUOTE"),
    SettingDefinition("STRATEGY_ENABLED", "strategy_enabled", "true", _parse_bool,
                      description="Master switch for new decisions"),
    SettingDefinition("CADENCE_HOURS", "cadence_hours", "6", _parse_int, _d("1"), _d("24"),
                      description="Hours between evaluation cycles"),
    SettingDefinition("MAX_ALLOC_FRACTION", "max_alloc_fraction", "0.2", _parse_decimal, _d("0"), _d("1"),
                      min_exclusive=True, description="Fraction of NAV per position"),
    SettingDefinition("MAX_POSITIONS", "max_positions", "3", _parse_int, _d("1"), _d("20"),
                      description="Maximum concurrent positions"),
    SettingDefinition("MIN_ORDER_USD", "min_order_usd", "5", _parse_decimal, _d("0"),
                      description="Smallest order notional"),
    SettingDefinition("MIN_BALANCE_USD", "min_balance_usd", "20", _parse_decimal, _d("0"),
                      description="NAV below which no cycle trades"),
    SettingDefinition("VOLATILITY_PAUSE_PCT", "volatility_pause_pct", "18", _parse_decimal, _d("0"), _d("100"),
                      description="Skip symbols whose 24h move exceeds this"),
    SettingDefinition("RSI_LOW", "rsi_low", "40", _parse_decimal, _d("0"), _d("100"),
                      description="Lower bound of the entry RSI band"),
    SettingDefinition("RSI_HIGH", "rsi_high", "70", _parse_decimal, _d("0"), _d("100"),
                      description="Upper bound of the entry RSI band"),
    SettingDefinition("EMA_SHORT", "ema_short", "12", _parse_int, _d("1"),
                      description="Short EMA period"),
    SettingDefinition("EMA_LONG", "ema_long", "26", _parse_int, _d("1"),
                      description="Long EMA period"),
    SettingDefinition("RSI_PERIOD", "rsi_period", "14", _parse_int, _d("1"),
                      description="RSI lookback"),
    SettingDefinition("COOLDOWN_CYCLES", "cooldown_cycles", "2", _parse_int, _d("0"),
                      description="Cycles a symbol waits after exit before re-entry"),
    SettingDefinition("MIN_PROFIT_USD", "min_profit_usd", "0.15", _parse_decimal, _d("0"),
                      description="Profit exit also needs at least this much profit"),
    SettingDefinition("MIN_PROFIT_PCT", "min_profit_pct", "3", _parse_decimal, _d("0"),
                      description="Take-profit exit threshold"),
    SettingDefinition("MAX_LOSS_PCT", "max_loss_pct", "2", _parse_decimal, _d("0"),
                      description="Stop-loss exit threshold"),
    SettingDefinition("MAX_LOSS_USD", "max_loss_usd", "0", _parse_decimal, _d("0"),
                      description="Absolute stop-loss, 0 disables"),
    SettingDefinition("SCALE_OUT_FRACTION", "scale_out_fraction", "0.3", _parse_decimal, _d("0"), _d("1"),
                      min_exclusive=True, max_exclusive=True, description="Share of a position sold on a trim"),
    SettingDefinition("SCALE_OUT_PROFIT_PCT", "scale_out_profit_pct", "2", _parse_decimal, _d("0"),
                      description="Trim when P&L is at least this"),
    SettingDefinition("SCALE_OUT_LOSS_PCT", "scale_out_loss_pct", "-1", _parse_decimal, None, _d("0"),
                      description="Trim when P&L is at most this"),
    SettingDefinition("STRONG_SIGNAL_COUNT", "strong_signal_count", "2", _parse_int, _d("1"),
                      description="Top-K considered strong for trims and averaging up"),
    SettingDefinition("REQUIRE_TREND_CONFIRMATION", "require_trend_confirmation", "true", _parse_bool,
                      description="Entries need EMA short above EMA long"),
]

SETTING_DEFINITIONS: Dict[str, SettingDefinition] = {d.key: d for d in _DEFINITIONS}


def get_definition(key: str) -> SettingDefinition:
    """
    Raises:
        InvalidSettingError: unknown key
    """
    definition = SETTING_DEFINITIONS.get(key.upper())
    if definition is None:
        raise InvalidSettingError(f"Unknown strategy setting: {key}", config_key=key)
    return definition


def is_integer_setting(key: str) -> bool:
    """Integer-valued settings are counts: cycles, positions, hours, signals."""
    return any(token in key.upper() for token in ("CYCLES", "POSITIONS", "HOURS", "COUNT"))


# ============================================================
# SNAPSHOT
# ============================================================


@dataclass(frozen=True)
class StrategySettings:
    """
    Frozen settings snapshot for one evaluation cycle.

    Build with from_mapping(); direct construction is validated
    for cross-field rules only.
    """

    universe: Tuple[str, ...] = ("BTC-USD", "ETH-USD")
    strategy_enabled: bool = True
    cadence_hours: int = 6
    max_alloc_fraction: Decimal = Decimal("0.2")
    max_positions: int = 3
    min_order_usd: Decimal = Decimal("5")
    min_balance_usd: Decimal = Decimal("20")
    volatility_pause_pct: Decimal = Decimal("18")
    rsi_low: Decimal = Decimal("40")
    rsi_high: Decimal = Decimal("70")
    ema_short: int = 12
    ema_long: int = 26
    rsi_period: int = 14
    cooldown_cycles: int = 2
    min_profit_usd: Decimal = Decimal("0.15")
    min_profit_pct: Decimal = Decimal("3")
    max_loss_pct: Decimal = Decimal("2")
    max_loss_usd: Decimal = Decimal("0")
    scale_out_fraction: Decimal = Decimal("0.3")
    scale_out_profit_pct: Decimal = Decimal("2")
    scale_out_loss_pct: Decimal = Decimal("-1")
    strong_signal_count: int = 2
    require_trend_confirmation: bool = True

    def __post_init__(self):
        if self.rsi_low >= self.rsi_high:
            raise InvalidSettingError(
                f"RSI_LOW ({self.rsi_low}) must be below RSI_HIGH ({self.rsi_high})",
                config_key="RSI_LOW",
                actual_value=str(self.rsi_low),
            )
        if self.ema_short >= self.ema_long:
            raise InvalidSettingError(
                f"EMA_SHORT ({self.ema_short}) must be below EMA_LONG ({self.ema_long})",
                config_key="EMA_SHORT",
                actual_value=str(self.ema_short),
            )
        # A single slot has no weak rank to trim
        if self.max_positions > 1 and self.strong_signal_count >= self.max_positions:
            raise InvalidSettingError(
                f"STRONG_SIGNAL_COUNT ({self.strong_signal_count}) must be below "
                f"MAX_POSITIONS ({self.max_positions})",
                config_key="STRONG_SIGNAL_COUNT",
                actual_value=str(self.strong_signal_count),
            )
        if not self.universe:
            raise InvalidSettingError("UNIVERSE is empty", config_key="UNIVERSE")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "StrategySettings":
        """
        Build from KEY -> raw value; missing keys use defaults.

        Raises:
            InvalidSettingError: unknown key, bad value or cross-field violation
        """
        kwargs: Dict[str, Any] = {}
        for key, raw in values.items():
            definition = get_definition(key)
            kwargs[definition.field_name] = definition.parse(raw)
        for definition in _DEFINITIONS:
            if definition.field_name not in kwargs:
                kwargs[definition.field_name] = definition.parse(definition.default)
        return cls(**kwargs)

    @property
    def cadence_interval(self) -> str:
        return f"{self.cadence_hours}h"

    def get(self, key: str) -> Any:
        return getattr(self, get_definition(key).field_name)

    def to_strings(self) -> Dict[str, str]:
        """KEY -> storage string."""
        return {d.key: d.format(getattr(self, d.field_name)) for d in _DEFINITIONS}

    def to_dict(self) -> Dict[str, Any]:
        """KEY -> JSON-friendly value."""
        result: Dict[str, Any] = {}
        for d in _DEFINITIONS:
            value = getattr(self, d.field_name)
            if isinstance(value, Decimal):
                value = float(value)
            elif isinstance(value, tuple):
                value = list(value)
            result[d.key] = value
        return result

    def replace(self, **changes: Any) -> "StrategySettings":
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(changes)
        return StrategySettings(**values)


def default_settings() -> StrategySettings:
    return StrategySettings.from_mapping({})
