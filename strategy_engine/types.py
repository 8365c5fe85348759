"""
Strategy Engine - Type Definitions.

============================================================
PURPOSE
============================================================
Data contracts between the Strategy Evaluator and the Order
Lifecycle Manager.

============================================================
CORE CONCEPTS
============================================================
1. SIGNAL: Indicator values and screen result for one symbol
2. TRADE INTENT: One order the evaluator wants executed
3. CYCLE RESULT: Everything one evaluation cycle decided

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from execution_engine.types import OrderSide

from .indicators import IndicatorResult


# ============================================================
# ENUMS
# ============================================================


class IntentAction(str, Enum):
    """Why an intent exists."""

    ENTER = "ENTER"
    """New position in a target symbol."""

    AVERAGE_UP = "AVERAGE_UP"
    """Add to a held, still top-ranked position."""

    TRIM = "TRIM"
    """Sell a fraction of a position (scaling out)."""

    EXIT = "EXIT"
    """Sell the whole position."""

    @property
    def side(self) -> OrderSide:
        if self in (IntentAction.ENTER, IntentAction.AVERAGE_UP):
            return OrderSide.BUY
        return OrderSide.SELL


class SkipReason(str, Enum):
    """Why a symbol was excluded from a cycle."""

    INSUFFICIENT_DATA = "insufficient_data"
    VOLATILITY_PAUSE = "volatility_pause"
    RSI_OUT_OF_BAND = "rsi_out_of_band"
    NO_TREND = "no_trend"
    COOLDOWN = "cooldown"
    PENDING_ORDER = "pending_order"
    ERROR = "error"


# ============================================================
# SIGNALS
# ============================================================


@dataclass(frozen=True)
class SymbolSignal:
    """Screen result for one symbol."""

    symbol: str
    indicators: IndicatorResult
    last_price: Decimal
    """Close of the newest candle."""

    return_24h: float
    """Fractional return over the 24h lookback."""

    eligible: bool = True
    """Passed every entry filter (volatility, RSI band, trend, cooldown)."""

    rejection: Optional[SkipReason] = None

    @property
    def score(self) -> float:
        return self.indicators.score


@dataclass(frozen=True)
class TradeIntent:
    """
    One order the evaluator wants executed.

    Quantity is already rounded to the lot increment.
    """

    symbol: str
    side: OrderSide
    quantity: Decimal
    reference_price: Decimal
    """Ask for buys, bid for sells, at evaluation time."""

    action: IntentAction
    reason: str = ""

    @property
    def notional(self) -> Decimal:
        return self.quantity * self.reference_price


@dataclass
class CycleResult:
    """Outcome of one evaluation cycle."""

    started_at: datetime
    intents: List[TradeIntent] = field(default_factory=list)
    ranked: List[SymbolSignal] = field(default_factory=list)
    """Eligible candidates, best score first."""

    skipped: Dict[str, str] = field(default_factory=dict)
    """Symbol -> reason for every symbol left out."""

    nav: Optional[Decimal] = None
    aborted_reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self.aborted_reason is not None

    def summary(self) -> str:
        if self.aborted:
            return f"cycle aborted: {self.aborted_reason}"
        actions = ", ".join(
            f"{i.action.value} {i.symbol} {i.quantity}" for i in self.intents
        ) or "no trades"
        return f"NAV {self.nav}, {len(self.ranked)} candidates, {actions}"
