"""
Strategy Engine - Strategy Evaluator.

============================================================
PURPOSE
============================================================
The cadence-driven decision loop. One call = one cycle:

1. Guards: strategy enabled, NAV >= MIN_BALANCE_USD
2. Screen the universe concurrently (candles -> indicators -> filters)
3. Rank eligible candidates by score, ties broken by symbol
4. Threshold exits on held positions (take-profit / stop-loss)
5. Target set = top MAX_POSITIONS; reconcile held positions against it
6. Size buys (lot rounding, then USD floor)
7. Emit intents: sells first, then buys in rank order

The evaluator reads prices, candles, balances and open orders.
It never places orders.

============================================================
FAILURE SEMANTICS
============================================================
- Per-symbol errors exclude that symbol, the cycle continues
- Guard failures return an empty, aborted CycleResult
- Authentication errors propagate

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from core.clock import ClockProtocol, SystemClock
from core.exceptions import AuthenticationError, DataInsufficiencyError, ExchangeError
from execution_engine.gateway import ExchangeGateway
from execution_engine.portfolio import compute_nav
from execution_engine.types import OrderSide, Ticker
from storage.ledger import TradingLedger
from storage.types import IndicatorSnapshot, Position

from .config import StrategySettings
from .cooldown import CooldownTracker
from .indicators import compute_indicators
from .sizing import size_for_allocation, size_order, size_trim
from .types import CycleResult, IntentAction, SkipReason, SymbolSignal, TradeIntent


logger = logging.getLogger(__name__)

CANDLE_LIMIT = 50
HOURS_PER_DAY = 24


@dataclass
class _Screened:
    """Screen output for one symbol: signal plus the ticker it was priced with."""

    signal: SymbolSignal
    ticker: Ticker


class StrategyEvaluator:
    """
    Turns a settings snapshot plus market state into trade intents.

    Holds no state between cycles; cooldowns and positions are
    re-read from the ledger every time.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        ledger: TradingLedger,
        clock: Optional[ClockProtocol] = None,
        candle_limit: int = CANDLE_LIMIT,
    ):
        self._gateway = gateway
        self._ledger = ledger
        self._clock = clock or SystemClock()
        self._candle_limit = candle_limit

    async def evaluate(self, settings: StrategySettings) -> List[TradeIntent]:
        """Run one cycle and return only the intents."""
        return (await self.run_cycle(settings)).intents

    async def run_cycle(self, settings: StrategySettings) -> CycleResult:
        result = CycleResult(started_at=self._clock.now())

        # ----------------------------------------------------
        # GUARDS
        # ----------------------------------------------------

        if not settings.strategy_enabled:
            result.aborted_reason = "strategy disabled"
            logger.info("Strategy disabled, skipping cycle")
            return result

        positions = self._ledger.get_open_positions()
        try:
            balances = await self._gateway.get_balances()
            nav = await compute_nav(self._gateway, positions, balances)
            open_orders = await self._gateway.get_open_orders()
        except AuthenticationError:
            raise
        except ExchangeError as e:
            result.aborted_reason = f"account state unavailable: {e}"
            logger.error(f"Cycle aborted, account state unavailable: {e}")
            return result

        result.nav = nav.nav
        if nav.nav < settings.min_balance_usd:
            result.aborted_reason = (
                f"NAV ${nav.nav:.2f} below minimum ${settings.min_balance_usd}"
            )
            logger.warning(f"Cycle aborted: {result.aborted_reason}")
            return result

        cooldowns = CooldownTracker(self._ledger)
        cooldowns.load()
        cooldowns.tick()

        pending_symbols = {o.symbol for o in open_orders}
        pending_buys = [o for o in open_orders if o.side == OrderSide.BUY]
        reserved_cash = sum(
            (o.remaining_quantity * (o.limit_price or Decimal("0")) for o in pending_buys),
            Decimal("0"),
        )

        # ----------------------------------------------------
        # SCREEN
        # ----------------------------------------------------

        screened = await self._screen_universe(settings, cooldowns, result)
        held: Dict[str, Position] = {p.symbol: p for p in positions}

        ranked = sorted(
            (s.signal for s in screened.values() if s.signal.eligible),
            key=lambda s: (-s.score, s.symbol),
        )
        # Cooldown blocks entries only; a held symbol keeps competing
        ranked_for_targets = [
            s for s in ranked
            if s.symbol in held or not cooldowns.is_cooling_down(s.symbol)
        ]
        result.ranked = ranked_for_targets
        rank_of = {s.symbol: i for i, s in enumerate(ranked_for_targets)}
        target = [s.symbol for s in ranked_for_targets[:settings.max_positions]]

        # ----------------------------------------------------
        # SELLS
        # ----------------------------------------------------

        sells: List[TradeIntent] = []
        exiting: Set[str] = set()

        for symbol in sorted(held):
            position = held[symbol]
            if symbol not in settings.universe:
                logger.info(f"{symbol} held outside the universe, left untouched")
                continue
            if symbol in pending_symbols:
                result.skipped.setdefault(symbol, SkipReason.PENDING_ORDER.value)
                continue
            entry = screened.get(symbol)
            if entry is None:
                continue

            bid = entry.ticker.bid
            intent = await self._threshold_exit(position, bid, settings)
            if intent is None and symbol not in target:
                intent = await self._exit(position, bid, "dropped out of target set")
            if intent is not None:
                if intent.quantity > 0:
                    sells.append(intent)
                    exiting.add(symbol)
                    cooldowns.start(symbol, settings.cooldown_cycles)
                continue

            trim = await self._trim(position, bid, rank_of.get(symbol), settings)
            if trim is not None:
                sells.append(trim)

        # ----------------------------------------------------
        # BUYS
        # ----------------------------------------------------

        unheld_pending = {o.symbol for o in pending_buys if o.symbol not in held}
        slots_used = len([s for s in held if s not in exiting]) + len(unheld_pending)
        free_cash = nav.free_cash - reserved_cash
        entries: List[Tuple[int, TradeIntent]] = []

        for symbol in target:
            if symbol in held or symbol in pending_symbols:
                if symbol in pending_symbols:
                    result.skipped.setdefault(symbol, SkipReason.PENDING_ORDER.value)
                continue
            if slots_used >= settings.max_positions:
                logger.debug(f"{symbol}: no free position slot")
                continue

            ask = screened[symbol].ticker.ask
            lot = await self._gateway.get_lot_info(symbol)
            quantity = size_order(
                nav.nav, settings.max_alloc_fraction, ask, lot, settings.min_order_usd,
            )
            if quantity <= 0:
                logger.info(f"{symbol}: allocation too small to trade")
                continue
            intent = TradeIntent(
                symbol=symbol,
                side=OrderSide.BUY,
                quantity=quantity,
                reference_price=ask,
                action=IntentAction.ENTER,
                reason=f"rank {rank_of[symbol] + 1}, score {screened[symbol].signal.score:.4f}",
            )
            if intent.notional > free_cash:
                logger.info(f"{symbol}: insufficient free cash for ${intent.notional:.2f}")
                continue
            free_cash -= intent.notional
            slots_used += 1
            entries.append((rank_of[symbol], intent))

        if slots_used >= settings.max_positions:
            for symbol in target:
                position = held.get(symbol)
                if position is None or symbol in exiting or symbol in pending_symbols:
                    continue
                if rank_of[symbol] >= settings.strong_signal_count:
                    continue
                intent = await self._average_up(position, screened[symbol].ticker.ask, nav.nav, settings)
                if intent is None:
                    continue
                if intent.notional > free_cash:
                    logger.info(f"{symbol}: insufficient free cash to average up")
                    continue
                free_cash -= intent.notional
                entries.append((rank_of[symbol], intent))

        entries.sort(key=lambda item: item[0])
        result.intents = sells + [intent for _, intent in entries]

        cooldowns.save()
        logger.info(f"Cycle complete: {result.summary()}")
        return result

    # --------------------------------------------------------
    # SCREENING
    # --------------------------------------------------------

    async def _screen_universe(
        self,
        settings: StrategySettings,
        cooldowns: CooldownTracker,
        result: CycleResult,
    ) -> Dict[str, _Screened]:
        outcomes = await asyncio.gather(
            *(self._screen_symbol(symbol, settings, cooldowns) for symbol in settings.universe)
        )
        screened: Dict[str, _Screened] = {}
        for symbol, (entry, reason) in zip(settings.universe, outcomes):
            if entry is not None:
                screened[symbol] = entry
            if reason is not None:
                result.skipped[symbol] = reason.value
        return screened

    async def _screen_symbol(
        self,
        symbol: str,
        settings: StrategySettings,
        cooldowns: CooldownTracker,
    ) -> Tuple[Optional[_Screened], Optional[SkipReason]]:
        try:
            candles, ticker = await asyncio.gather(
                self._gateway.get_candles(symbol, settings.cadence_interval, self._candle_limit),
                self._gateway.get_ticker(symbol),
            )
            if len(candles) < settings.ema_long:
                raise DataInsufficiencyError(
                    f"{symbol}: {len(candles)} candles, need {settings.ema_long}",
                    symbol=symbol,
                    required=settings.ema_long,
                    available=len(candles),
                )
            closes = [c.close for c in candles]
            indicators = compute_indicators(
                closes, settings.ema_short, settings.ema_long, settings.rsi_period,
            )
        except AuthenticationError:
            raise
        except DataInsufficiencyError as e:
            logger.info(f"Skipping {symbol}: {e}")
            return None, SkipReason.INSUFFICIENT_DATA
        except (ExchangeError, ValueError, ArithmeticError) as e:
            logger.error(f"Skipping {symbol}: {e}")
            return None, SkipReason.ERROR

        self._ledger.record_indicator_snapshot(IndicatorSnapshot(
            symbol=symbol,
            generated_at=self._clock.now(),
            ema_short=indicators.ema_short,
            ema_long=indicators.ema_long,
            rsi=indicators.rsi,
            score=indicators.score,
        ))

        return_24h = self._return_24h(closes, settings.cadence_hours)
        rejection = self._apply_filters(symbol, indicators, return_24h, settings, cooldowns)
        signal = SymbolSignal(
            symbol=symbol,
            indicators=indicators,
            last_price=closes[-1],
            return_24h=return_24h,
            eligible=rejection is None or rejection == SkipReason.COOLDOWN,
            rejection=rejection,
        )
        return _Screened(signal=signal, ticker=ticker), rejection

    @staticmethod
    def _return_24h(closes: List[Decimal], cadence_hours: int) -> float:
        lookback = max(1, round(HOURS_PER_DAY / cadence_hours))
        reference = closes[-1 - lookback] if len(closes) > lookback else closes[0]
        if reference <= 0:
            return 0.0
        return float((closes[-1] - reference) / reference)

    @staticmethod
    def _apply_filters(
        symbol: str,
        indicators,
        return_24h: float,
        settings: StrategySettings,
        cooldowns: CooldownTracker,
    ) -> Optional[SkipReason]:
        if abs(return_24h) * 100 > float(settings.volatility_pause_pct):
            logger.info(f"{symbol}: 24h move {return_24h:.2%} exceeds volatility pause")
            return SkipReason.VOLATILITY_PAUSE
        if not float(settings.rsi_low) <= indicators.rsi <= float(settings.rsi_high):
            logger.debug(f"{symbol}: RSI {indicators.rsi:.1f} outside band")
            return SkipReason.RSI_OUT_OF_BAND
        if settings.require_trend_confirmation and not indicators.is_bullish:
            logger.debug(f"{symbol}: no trend confirmation")
            return SkipReason.NO_TREND
        if cooldowns.is_cooling_down(symbol):
            return SkipReason.COOLDOWN
        return None

    # --------------------------------------------------------
    # POSITION DECISIONS
    # --------------------------------------------------------

    async def _threshold_exit(
        self,
        position: Position,
        bid: Decimal,
        settings: StrategySettings,
    ) -> Optional[TradeIntent]:
        pnl_pct = position.unrealized_pnl_pct(bid)
        pnl_usd = position.unrealized_pnl(bid)

        if (
            settings.min_profit_pct > 0
            and pnl_pct >= settings.min_profit_pct
            and pnl_usd >= settings.min_profit_usd
        ):
            return await self._exit(position, bid, f"take profit at {pnl_pct:.2f}%")
        if settings.max_loss_pct > 0 and pnl_pct <= -settings.max_loss_pct:
            return await self._exit(position, bid, f"stop loss at {pnl_pct:.2f}%")
        if settings.max_loss_usd > 0 and -pnl_usd >= settings.max_loss_usd:
            return await self._exit(position, bid, f"stop loss at ${pnl_usd:.2f}")
        return None

    async def _exit(self, position: Position, bid: Decimal, reason: str) -> TradeIntent:
        quantity = await self._gateway.round_quantity(position.symbol, position.quantity)
        if quantity <= 0:
            logger.warning(f"{position.symbol}: position {position.quantity} is below lot minimum, cannot exit")
        return TradeIntent(
            symbol=position.symbol,
            side=OrderSide.SELL,
            quantity=quantity,
            reference_price=bid,
            action=IntentAction.EXIT,
            reason=reason,
        )

    async def _trim(
        self,
        position: Position,
        bid: Decimal,
        rank: Optional[int],
        settings: StrategySettings,
    ) -> Optional[TradeIntent]:
        if rank is not None and rank < settings.strong_signal_count:
            return None
        pnl_pct = position.unrealized_pnl_pct(bid)
        if not (
            pnl_pct >= settings.scale_out_profit_pct
            or pnl_pct <= settings.scale_out_loss_pct
        ):
            return None

        lot = await self._gateway.get_lot_info(position.symbol)
        quantity = size_trim(position.quantity, settings.scale_out_fraction, lot)
        if quantity <= 0:
            logger.debug(f"{position.symbol}: trim rounds to zero")
            return None
        return TradeIntent(
            symbol=position.symbol,
            side=OrderSide.SELL,
            quantity=quantity,
            reference_price=bid,
            action=IntentAction.TRIM,
            reason=f"scale out at {pnl_pct:.2f}%",
        )

    async def _average_up(
        self,
        position: Position,
        ask: Decimal,
        nav: Decimal,
        settings: StrategySettings,
    ) -> Optional[TradeIntent]:
        headroom = nav * settings.max_alloc_fraction - position.market_value(ask)
        if headroom <= 0:
            return None
        lot = await self._gateway.get_lot_info(position.symbol)
        quantity = size_for_allocation(headroom, ask, lot, settings.min_order_usd)
        if quantity <= 0:
            return None
        return TradeIntent(
            symbol=position.symbol,
            side=OrderSide.BUY,
            quantity=quantity,
            reference_price=ask,
            action=IntentAction.AVERAGE_UP,
            reason=f"headroom ${headroom:.2f}",
        )
