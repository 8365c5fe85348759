"""
Strategy Engine Package.

============================================================
PURPOSE
============================================================
Rotation strategy: rank the universe by a momentum /
mean-reversion score and decide which positions to open,
hold, trim, average up or exit.

AUTHORITY BOUNDARIES:
    CAN:
        - Read candles, tickers, balances and open orders
        - Emit trade intents
        - Record indicator snapshots and cooldowns

    MUST NOT:
        - Place or cancel orders
        - Mutate settings mid-cycle

============================================================
MODULES
============================================================
- indicators: EMA, RSI, composite score
- config: Setting definitions and the frozen snapshot
- settings: Versioned settings service
- sizing: Lot-rounded, USD-floored order sizing
- cooldown: Re-entry cooldowns
- evaluator: The per-cycle decision loop
- types: Signals, intents, cycle results

============================================================
"""

from .indicators import (
    DEFAULT_EMA_SHORT,
    DEFAULT_EMA_LONG,
    DEFAULT_RSI_PERIOD,
    IndicatorResult,
    ema,
    ema_series,
    rsi,
    composite_score,
    compute_indicators,
)
from .config import (
    SETTING_DEFINITIONS,
    SettingDefinition,
    StrategySettings,
    default_settings,
    get_definition,
    is_integer_setting,
)
from .types import (
    IntentAction,
    SkipReason,
    SymbolSignal,
    TradeIntent,
    CycleResult,
)
from .sizing import size_for_allocation, size_order, size_trim
from .cooldown import CooldownTracker
from .settings import SettingsService
from .evaluator import StrategyEvaluator


__all__ = [
    "DEFAULT_EMA_SHORT",
    "DEFAULT_EMA_LONG",
    "DEFAULT_RSI_PERIOD",
    "IndicatorResult",
    "ema",
    "ema_series",
    "rsi",
    "composite_score",
    "compute_indicators",
    "SETTING_DEFINITIONS",
    "SettingDefinition",
    "StrategySettings",
    "default_settings",
    "get_definition",
    "is_integer_setting",
    "IntentAction",
    "SkipReason",
    "SymbolSignal",
    "TradeIntent",
    "CycleResult",
    "size_for_allocation",
    "size_order",
    "size_trim",
    "CooldownTracker",
    "SettingsService",
    "StrategyEvaluator",
]
