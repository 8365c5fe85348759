"""
Strategy Engine - Settings Service.

============================================================
PURPOSE
============================================================
Versioned read/write access to strategy settings.

Lookup order for each key:
1. Database value (latest version)
2. Environment variable of the same name
3. Built-in default

Writers are the operator (CLI) and the auto-tuner. Every write
is validated first and leaves a history row.

============================================================
"""

import logging
import os
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv

from core.exceptions import InvalidSettingError
from storage.ledger import TradingLedger
from storage.types import SettingChange

from .config import SETTING_DEFINITIONS, StrategySettings, get_definition


load_dotenv()

logger = logging.getLogger(__name__)


class SettingsService:
    """Strategy settings backed by the trading ledger."""

    def __init__(self, ledger: TradingLedger, environ: Optional[Mapping[str, str]] = None):
        self._ledger = ledger
        self._environ = environ if environ is not None else os.environ

    # --------------------------------------------------------
    # READ
    # --------------------------------------------------------

    def get_raw_values(self) -> Dict[str, str]:
        """KEY -> raw string, resolved DB -> env -> default."""
        stored = self._ledger.get_settings()
        values: Dict[str, str] = {}
        for key, definition in SETTING_DEFINITIONS.items():
            if key in stored:
                values[key] = stored[key].value
            elif self._environ.get(key) not in (None, ""):
                values[key] = self._environ[key]
            else:
                values[key] = definition.default
        return values

    def get_sources(self) -> Dict[str, str]:
        """KEY -> where its value came from (db, env, default)."""
        stored = self._ledger.get_settings()
        sources = {}
        for key in SETTING_DEFINITIONS:
            if key in stored:
                sources[key] = f"db (v{stored[key].version})"
            elif self._environ.get(key) not in (None, ""):
                sources[key] = "env"
            else:
                sources[key] = "default"
        return sources

    def load_snapshot(self) -> StrategySettings:
        """
        Load a frozen snapshot for one cycle.

        Raises:
            InvalidSettingError: any value fails validation
        """
        return StrategySettings.from_mapping(self.get_raw_values())

    def get_value(self, key: str) -> Any:
        return self.load_snapshot().get(key)

    def get_history(self, key: Optional[str] = None, limit: int = 50) -> List[SettingChange]:
        return self._ledger.get_setting_history(key.upper() if key else None, limit)

    # --------------------------------------------------------
    # WRITE
    # --------------------------------------------------------

    def update_setting(self, key: str, value: Any, source: str = "user") -> SettingChange:
        """
        Validate and store one setting.

        Raises:
            InvalidSettingError: unknown key, bad value or cross-field violation
        """
        return self.update_settings({key: value}, source)[0]

    def update_settings(self, values: Mapping[str, Any], source: str = "user") -> List[SettingChange]:
        """
        Validate all values, then store them in one transaction.

        Nothing is written when any value is invalid.
        """
        if not values:
            return []

        formatted: Dict[str, str] = {}
        for key, raw in values.items():
            definition = get_definition(key)
            formatted[definition.key] = definition.format(definition.parse(raw))

        # Cross-field rules against the merged result
        merged = self.get_raw_values()
        merged.update(formatted)
        StrategySettings.from_mapping(merged)

        changes = self._ledger.upsert_settings(formatted, source)
        for change in changes:
            logger.info(
                f"Setting {change.key}: {change.old_value} -> {change.new_value} "
                f"(v{change.version}, source={source})"
            )
        return changes
