"""
Strategy Engine - Re-entry Cooldowns.

A symbol that was fully exited waits COOLDOWN_CYCLES evaluation
cycles before it may be bought again. Counters live in the
ledger so every cycle starts from the durable store.
"""

import logging
from typing import Dict

from storage.ledger import TradingLedger


logger = logging.getLogger(__name__)


class CooldownTracker:
    """Per-symbol cycle countdown."""

    def __init__(self, ledger: TradingLedger):
        self._ledger = ledger
        self._remaining: Dict[str, int] = {}

    def load(self) -> None:
        self._remaining = {
            symbol: cycles
            for symbol, cycles in self._ledger.get_cooldowns().items()
            if cycles > 0
        }

    def tick(self) -> None:
        """Start of a cycle: every counter moves down by one."""
        self._remaining = {
            symbol: cycles - 1
            for symbol, cycles in self._remaining.items()
            if cycles - 1 > 0
        }

    def start(self, symbol: str, cycles: int) -> None:
        if cycles <= 0:
            return
        self._remaining[symbol] = cycles
        logger.info(f"{symbol} in cooldown for {cycles} cycles")

    def is_cooling_down(self, symbol: str) -> bool:
        return self._remaining.get(symbol, 0) > 0

    def remaining(self, symbol: str) -> int:
        return self._remaining.get(symbol, 0)

    def snapshot(self) -> Dict[str, int]:
        return dict(self._remaining)

    def save(self) -> None:
        self._ledger.save_cooldowns(self._remaining)
