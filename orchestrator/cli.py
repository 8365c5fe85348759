"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the rotation trader.

- Provides argparse-based CLI
- Runs the scheduler or any single job once
- Reads and writes strategy settings
- Loads configuration from CLI and environment

============================================================
USAGE
============================================================
python -m orchestrator run
python -m orchestrator evaluate --dry-run
python -m orchestrator reconcile
python -m orchestrator settings set MAX_POSITIONS 4
python -m orchestrator --mock-exchange evaluate

============================================================
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from core.exceptions import TradingException
from storage.database import Database
from storage.ledger import TradingLedger
from strategy_engine.config import SETTING_DEFINITIONS
from strategy_engine.settings import SettingsService

from .jobs import TradingRuntime, build_runtime
from .models import OrchestratorConfig


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="rotation-trader",
        description="Rotation crypto trader: strategy, execution, reconciliation and tuning",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run         - Run the scheduler (strategy, reconcile, sweep, optimize)
  evaluate    - Run one strategy cycle
  reconcile   - Reconcile positions against exchange balances once
  optimize    - Run the nightly optimization once
  sweep       - Cancel stale resting orders once
  settings    - Show or change strategy settings
  init-db     - Create database tables

Examples:
  %(prog)s --mock-exchange evaluate --dry-run
  %(prog)s settings set COOLDOWN_CYCLES 3
        """
    )

    # --------------------------------------------------------
    # Global Options
    # --------------------------------------------------------
    parser.add_argument(
        "--mock-exchange",
        action="store_true",
        help="Use the in-memory mock exchange instead of Kraken",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Logging level (default: LOG_LEVEL or INFO)",
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    # --------------------------------------------------------
    # Jobs
    # --------------------------------------------------------
    commands.add_parser("run", help="Run the scheduler until interrupted")

    evaluate = commands.add_parser("evaluate", help="Run one strategy cycle")
    evaluate.add_argument(
        "--dry-run",
        action="store_true",
        help="Print intents without placing orders",
    )

    commands.add_parser("reconcile", help="Reconcile positions once")
    commands.add_parser("optimize", help="Run the optimization once")
    commands.add_parser("sweep", help="Cancel stale resting orders")

    # --------------------------------------------------------
    # Settings
    # --------------------------------------------------------
    settings = commands.add_parser("settings", help="Show or change strategy settings")
    settings_commands = settings.add_subparsers(dest="settings_command", metavar="ACTION")
    settings_commands.required = True

    settings_commands.add_parser("show", help="Show current values and their source")

    set_parser = settings_commands.add_parser("set", help="Change one setting")
    set_parser.add_argument("key", type=str.upper, choices=sorted(SETTING_DEFINITIONS), metavar="KEY")
    set_parser.add_argument("value", metavar="VALUE")

    history = settings_commands.add_parser("history", help="Show recent setting changes")
    history.add_argument("key", nargs="?", type=str.upper, metavar="KEY")
    history.add_argument("--limit", type=int, default=20)

    # --------------------------------------------------------
    # Database
    # --------------------------------------------------------
    commands.add_parser("init-db", help="Create database tables")

    return parser


# ============================================================
# CLI CONFIGURATION BUILDER
# ============================================================

def build_config(args: argparse.Namespace) -> OrchestratorConfig:
    """Environment configuration with CLI overrides applied."""
    config = OrchestratorConfig.from_env()
    if args.mock_exchange:
        config.use_mock_exchange = True
    if args.log_level:
        config.log_level = args.log_level
    return config


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


# ============================================================
# COMMANDS
# ============================================================

async def run_scheduler(runtime: TradingRuntime, config: OrchestratorConfig) -> int:
    scheduler = runtime.build_scheduler(config)

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, scheduler.request_stop)

    await scheduler.run_forever()
    return 0


async def run_evaluate(runtime: TradingRuntime, dry_run: bool) -> int:
    result = await runtime.run_strategy(dry_run=dry_run or None)
    cycle = result.cycle

    print(f"NAV: {cycle.nav}")
    if cycle.aborted:
        print(f"Cycle aborted: {cycle.aborted_reason}")
        return 0

    print("Ranked candidates:")
    for i, signal_ in enumerate(cycle.ranked, 1):
        ind = signal_.indicators
        print(
            f"  {i:2d}. {signal_.symbol:10s} score={ind.score:.4f} rsi={ind.rsi:.1f} "
            f"ema={ind.ema_short:.2f}/{ind.ema_long:.2f}"
        )
    for symbol, reason in sorted(cycle.skipped.items()):
        print(f"  skipped {symbol}: {reason}")

    print("Intents:" if cycle.intents else "Intents: none")
    for intent in cycle.intents:
        print(
            f"  {intent.action.value:10s} {intent.side.value:4s} {intent.symbol:10s} "
            f"{intent.quantity} @ {intent.reference_price} ({intent.reason})"
        )
    for report in result.executions:
        print(
            f"  -> {report.symbol}: {report.status.value} {report.filled_quantity}"
            f" avg={report.average_price} fee={report.fee}"
        )
    return 0


async def run_reconcile(runtime: TradingRuntime) -> int:
    result = await runtime.run_reconciliation()
    print(result.summary())
    if result.unresolved_count:
        print(f"  {result.unresolved_count} mismatch(es) need review")
    for mismatch in result.mismatches:
        print(f"  [{mismatch.severity.value}] {mismatch.symbol}: {mismatch.message}")
    for error in result.errors:
        print(f"  error: {error}")
    return 0 if result.success else 1


async def run_optimize(runtime: TradingRuntime) -> int:
    result = await runtime.run_optimization()
    print(result.summary())
    if result.metrics:
        for key, value in result.metrics.to_dict().items():
            print(f"  {key}: {value}")
    applied = {id(r) for r in result.applied}
    for rec in result.recommendations:
        marker = "applied" if id(rec) in applied else "manual"
        print(f"  [{marker}] {rec.parameter} {rec.old_value} -> {rec.new_value}: {rec.reason}")
    return 0 if result.status == "completed" else 1


async def run_sweep(runtime: TradingRuntime) -> int:
    cancelled = await runtime.run_sweep()
    print(f"Cancelled {len(cancelled)} stale order(s)")
    for order_id in cancelled:
        print(f"  {order_id}")
    return 0


def run_settings(args: argparse.Namespace, database: Database) -> int:
    service = SettingsService(TradingLedger(database))

    if args.settings_command == "show":
        values = service.get_raw_values()
        sources = service.get_sources()
        for key in SETTING_DEFINITIONS:
            print(f"{key:28s} {values[key]:20s} [{sources[key]}]")
        return 0

    if args.settings_command == "set":
        change = service.update_setting(args.key, args.value, source="cli")
        print(f"{change.key}: {change.old_value} -> {change.new_value} (v{change.version})")
        return 0

    for change in service.get_history(args.key, args.limit):
        print(
            f"{change.changed_at:%Y-%m-%d %H:%M} {change.key:24s} "
            f"{change.old_value} -> {change.new_value} ({change.source})"
        )
    return 0


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace, config: OrchestratorConfig) -> int:
    """
    Async main entry point for commands that talk to the exchange.

    Returns:
        Exit code
    """
    runtime = build_runtime(config)
    runtime.ledger.database.create_all()

    try:
        await runtime.start()
        if args.command == "run":
            return await run_scheduler(runtime, config)
        if args.command == "evaluate":
            return await run_evaluate(runtime, args.dry_run)
        if args.command == "reconcile":
            return await run_reconcile(runtime)
        if args.command == "optimize":
            return await run_optimize(runtime)
        return await run_sweep(runtime)
    finally:
        await runtime.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except TradingException as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    configure_logging(config.log_level)

    try:
        if args.command in ("init-db", "settings"):
            database = Database.from_url(config.database_url) if config.database_url else Database.from_env()
            if args.command == "init-db":
                database.verify_connection()
                database.create_all()
                print("Database tables created")
                return 0
            database.create_all()
            return run_settings(args, database)

        return asyncio.run(async_main(args, config))

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except TradingException as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
