"""
Tuning Engine - FIFO Profit Matcher.

============================================================
PURPOSE
============================================================
Rebuild realized round-trips from the trade log.

Per symbol, unmatched buy lots wait in a queue. A sell consumes
lots from the front until its quantity is exhausted or the queue
is empty. Each consumed lot carries its fee proportionally:

    profit = (matched_qty × sell_price − sell_fee)
             − Σ (lot_qty × buy_price + lot_fee × lot_qty / lot_original_qty)

The queues are scoped to one analysis run and never persisted.

============================================================
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Deque, Dict, Iterable, List, Optional

from core.clock import ensure_utc


logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class BuyLot:
    """Unmatched part of one buy trade."""

    quantity: Decimal
    """Remaining quantity, decremented in place."""

    price: Decimal
    fee: Decimal
    """Remaining fee, reduced in step with quantity."""

    bought_at: datetime


@dataclass(frozen=True)
class RoundTrip:
    """One sell matched against earlier buys."""

    symbol: str
    quantity: Decimal
    """Matched quantity (may be less than the sell when buys ran out)."""

    buy_cost: Decimal
    """Σ matched quantity × buy price + proportional buy fees."""

    sell_price: Decimal
    sell_fee: Decimal
    profit: Decimal
    opened_at: datetime
    """Time of the earliest matched buy."""

    closed_at: datetime

    @property
    def is_win(self) -> bool:
        return self.profit > 0

    @property
    def hold_hours(self) -> float:
        return (self.closed_at - self.opened_at).total_seconds() / 3600


@dataclass
class FifoMatcher:
    """Feed trades oldest first; collect round-trips."""

    round_trips: List[RoundTrip] = field(default_factory=list)
    _queues: Dict[str, Deque[BuyLot]] = field(default_factory=lambda: defaultdict(deque))

    def add_buy(self, symbol: str, quantity: Decimal, price: Decimal, fee: Decimal, at: datetime) -> None:
        if quantity <= 0:
            return
        self._queues[symbol].append(BuyLot(quantity=quantity, price=price, fee=fee, bought_at=ensure_utc(at)))

    def add_sell(
        self,
        symbol: str,
        quantity: Decimal,
        price: Decimal,
        fee: Decimal,
        at: datetime,
    ) -> Optional[RoundTrip]:
        """
        Match a sell against queued buys.

        Returns:
            The round-trip, or None when no buy was available
        """
        queue = self._queues[symbol]
        remaining = quantity
        matched = ZERO
        buy_cost = ZERO
        opened_at: Optional[datetime] = None

        while remaining > 0 and queue:
            lot = queue[0]
            take = min(remaining, lot.quantity)
            lot_fee = lot.fee if take == lot.quantity else lot.fee * take / lot.quantity
            buy_cost += take * lot.price + lot_fee
            matched += take
            remaining -= take
            if opened_at is None:
                opened_at = lot.bought_at

            lot.fee -= lot_fee
            lot.quantity -= take
            if lot.quantity <= 0:
                queue.popleft()

        if matched <= 0:
            logger.warning(f"Sell of {quantity} {symbol} has no matching buys")
            return None
        if remaining > 0:
            logger.warning(f"Sell of {quantity} {symbol} only matched {matched}")

        closed_at = ensure_utc(at)
        profit = matched * price - fee - buy_cost
        trip = RoundTrip(
            symbol=symbol,
            quantity=matched,
            buy_cost=buy_cost,
            sell_price=price,
            sell_fee=fee,
            profit=profit,
            opened_at=opened_at or closed_at,
            closed_at=closed_at,
        )
        self.round_trips.append(trip)
        logger.debug(f"Round trip {symbol}: {matched} -> profit {profit:.4f}")
        return trip

    def open_quantity(self, symbol: str) -> Decimal:
        return sum((lot.quantity for lot in self._queues.get(symbol, ())), ZERO)


def match_trades(trades: Iterable) -> List[RoundTrip]:
    """
    Match a trade history.

    Args:
        trades: objects with symbol, side ("buy"/"sell"), quantity,
            price, fee and created_at; sorted here by created_at
    """
    matcher = FifoMatcher()
    for trade in sorted(trades, key=lambda t: ensure_utc(t.created_at)):
        side = str(getattr(trade.side, "value", trade.side)).lower()
        if side == "buy":
            matcher.add_buy(trade.symbol, trade.quantity, trade.price, trade.fee, trade.created_at)
        elif side == "sell":
            matcher.add_sell(trade.symbol, trade.quantity, trade.price, trade.fee, trade.created_at)
    return matcher.round_trips
