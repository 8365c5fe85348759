"""
Execution Engine - Portfolio Valuation.

NAV = USD balance (free + locked) + Σ open position quantity × last price.

A position whose ticker cannot be fetched is valued at its entry
price so one bad symbol never blocks the cycle.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from core.exceptions import AuthenticationError, ExchangeError

from .gateway import ExchangeGateway
from .types import AccountBalance


logger = logging.getLogger(__name__)

QUOTE_ASSET = "USD"


@dataclass
class NavBreakdown:
    """Net asset value and its components."""

    nav: Decimal
    cash: Decimal
    """USD free + locked."""

    free_cash: Decimal
    """USD available for new buys."""

    positions_value: Decimal
    prices: Dict[str, Decimal] = field(default_factory=dict)
    """Price used per open position symbol."""

    estimated: List[str] = field(default_factory=list)
    """Symbols valued at entry price because the ticker failed."""


async def compute_nav(
    gateway: ExchangeGateway,
    positions: Sequence,
    balances: Optional[Dict[str, AccountBalance]] = None,
) -> NavBreakdown:
    """
    Value the account.

    Args:
        positions: Open positions (anything with symbol, quantity, entry_price)
        balances: Pre-fetched balances, fetched when omitted

    Raises:
        ExchangeError: if balances cannot be fetched
    """
    if balances is None:
        balances = await gateway.get_balances()

    usd = balances.get(QUOTE_ASSET, AccountBalance(asset=QUOTE_ASSET))

    async def price_of(position) -> Optional[Decimal]:
        try:
            return (await gateway.get_ticker(position.symbol)).last
        except AuthenticationError:
            raise
        except ExchangeError as e:
            logger.warning(f"Ticker failed for {position.symbol}, valuing at entry price: {e}")
            return None

    prices = await asyncio.gather(*(price_of(p) for p in positions))

    breakdown = NavBreakdown(
        nav=Decimal("0"),
        cash=usd.total,
        free_cash=usd.free,
        positions_value=Decimal("0"),
    )
    for position, price in zip(positions, prices):
        if price is None:
            price = position.entry_price
            breakdown.estimated.append(position.symbol)
        breakdown.prices[position.symbol] = price
        breakdown.positions_value += position.quantity * price

    breakdown.nav = breakdown.cash + breakdown.positions_value
    logger.debug(
        f"NAV {breakdown.nav} (cash {breakdown.cash}, positions {breakdown.positions_value})"
    )
    return breakdown
