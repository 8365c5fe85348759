"""
Storage Package.

This package manages all data persistence for the trading core.

Modules:
- database: Engine, sessions and transaction scopes
- ledger: TradingLedger façade used by the core
- models/: SQLAlchemy ORM models
- repositories/: Data access layer
- types: Dataclasses returned by the ledger

Import the ledger from storage.ledger; this package module stays
import-light so value types can be used without a database.
"""
