"""
Execution Engine - Symbol Mapping.

============================================================
PURPOSE
============================================================
Bidirectional translation between internal symbols
(BASE-QUOTE, e.g. BTC-USD) and exchange-native pair names,
plus normalization of exchange asset codes.

Each exchange adapter owns one SymbolMapper so the strategy
and lifecycle layers never see native names.

============================================================
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional


# ============================================================
# MAPPER INTERFACE
# ============================================================

class SymbolMapper(ABC):
    """Translate symbols and asset codes for one exchange."""

    @abstractmethod
    def to_exchange(self, symbol: str) -> str:
        """Internal symbol -> exchange pair name."""
        pass

    @abstractmethod
    def from_exchange(self, pair: str) -> Optional[str]:
        """Exchange pair name -> internal symbol, None if unknown."""
        pass

    @abstractmethod
    def normalize_asset(self, asset: str) -> str:
        """Exchange asset code -> internal asset code."""
        pass

    @staticmethod
    def base_asset(symbol: str) -> str:
        """BTC-USD -> BTC."""
        return symbol.split("-")[0].upper()

    @staticmethod
    def quote_asset(symbol: str) -> str:
        """BTC-USD -> USD."""
        parts = symbol.split("-")
        return parts[1].upper() if len(parts) > 1 else "USD"


# ============================================================
# KRAKEN
# ============================================================

KRAKEN_PAIRS: Dict[str, str] = {
    "BTC-USD": "XBTUSD",
    "ETH-USD": "ETHUSD",
    "SOL-USD": "SOLUSD",
}

KRAKEN_PAIRS_REVERSE: Dict[str, str] = {v: k for k, v in KRAKEN_PAIRS.items()}

# Kraken's legacy asset codes carry X (crypto) / Z (fiat) prefixes
KRAKEN_ASSETS: Dict[str, str] = {
    "XXBT": "BTC",
    "XBT": "BTC",
    "XXDG": "DOGE",
    "XDG": "DOGE",
    "XXRP": "XRP",
    "XETH": "ETH",
    "XADA": "ADA",
    "XDOT": "DOT",
    "XAVAX": "AVAX",
    "XSOL": "SOL",
    "XLTC": "LTC",
    "XXLM": "XLM",
    "ZUSD": "USD",
    "ZEUR": "EUR",
}

# Native pair names Kraken returns in result keys (e.g. XXBTZUSD)
KRAKEN_RESULT_KEYS: Dict[str, str] = {
    "XXBTZUSD": "BTC-USD",
    "XETHZUSD": "ETH-USD",
    "XXRPZUSD": "XRP-USD",
    "XXDGZUSD": "DOGE-USD",
    "XLTCZUSD": "LTC-USD",
}


class KrakenSymbolMapper(SymbolMapper):
    """Kraken spot pair naming."""

    def to_exchange(self, symbol: str) -> str:
        symbol = symbol.upper()
        if symbol in KRAKEN_PAIRS:
            return KRAKEN_PAIRS[symbol]
        return symbol.replace("-", "")

    def from_exchange(self, pair: str) -> Optional[str]:
        pair = pair.upper()
        if pair in KRAKEN_PAIRS_REVERSE:
            return KRAKEN_PAIRS_REVERSE[pair]
        if pair in KRAKEN_RESULT_KEYS:
            return KRAKEN_RESULT_KEYS[pair]
        for suffix in ("ZUSD", "USD"):
            if pair.endswith(suffix) and len(pair) > len(suffix):
                base = self.normalize_asset(pair[: -len(suffix)])
                return f"{base}-USD"
        return None

    def normalize_asset(self, asset: str) -> str:
        if not asset:
            return asset
        upper = asset.upper()
        if upper in KRAKEN_ASSETS:
            return KRAKEN_ASSETS[upper]

        normalized = upper
        for _ in range(2):
            if len(normalized) > 3 and normalized[0] in ("X", "Z"):
                normalized = normalized[1:]
        return KRAKEN_ASSETS.get(normalized, normalized)
