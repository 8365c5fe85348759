"""
Strategy Engine - Position Sizing.

Two-stage rejection keeps dust orders out:
1. Round down to the lot increment (0 below the exchange minimum)
2. Reject when the rounded notional is under MIN_ORDER_USD
"""

import logging
from decimal import Decimal

from execution_engine.adapters.lot_sizes import round_quantity
from execution_engine.types import LotInfo


logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def size_for_allocation(
    allocation: Decimal,
    price: Decimal,
    lot: LotInfo,
    min_order_usd: Decimal,
) -> Decimal:
    """
    Quantity purchasable with `allocation` USD at `price`.

    Returns:
        Rounded quantity, or 0 when the order would be dust
    """
    if allocation <= 0 or price <= 0:
        return ZERO

    raw_quantity = allocation / price
    quantity = round_quantity(raw_quantity, lot)
    if quantity <= 0:
        logger.debug(
            f"{lot.symbol}: {raw_quantity} below minimum size {lot.min_order_size}"
        )
        return ZERO

    if quantity * price < min_order_usd:
        logger.debug(
            f"{lot.symbol}: notional {quantity * price} below minimum order ${min_order_usd}"
        )
        return ZERO

    return quantity


def size_order(
    nav: Decimal,
    alloc_fraction: Decimal,
    price: Decimal,
    lot: LotInfo,
    min_order_usd: Decimal,
) -> Decimal:
    """Size a new position at NAV × alloc_fraction."""
    return size_for_allocation(nav * alloc_fraction, price, lot, min_order_usd)


def size_trim(quantity: Decimal, fraction: Decimal, lot: LotInfo) -> Decimal:
    """Share of a position to sell when scaling out, 0 when it rounds away."""
    return round_quantity(quantity * fraction, lot)
