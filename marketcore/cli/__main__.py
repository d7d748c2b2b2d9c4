"""
marketcore CLI - operator commands for the settlement engine.

Usage:
    marketcore [--db PATH] [--json] sweep
    marketcore [--db PATH] [--json] wallet show VENDOR
    marketcore [--db PATH] [--json] wallet reconcile VENDOR
    marketcore [--db PATH] [--json] credits balance USER
    marketcore [--db PATH] [--json] credits history USER [--limit N]
    marketcore [--db PATH] [--json] batch show BATCH
    marketcore [--db PATH] [--json] batch evaluate BATCH

Storage is the SQLite file from --db or MARKETCORE_DATABASE_PATH, else
Supabase when MARKETCORE_SUPABASE_URL is set. Commands that move money
(sweep, batch evaluate) need MARKETCORE_PAYMENT_PROCESSOR.
"""

import argparse
import importlib
import json
import logging
import sys
from decimal import Decimal
from typing import Any, Optional

from marketcore.config import SettlementConfig, get_config
from marketcore.engine import SettlementEngine
from marketcore.protocols import MarketcoreError, PaymentResult
from marketcore.sweeper import ReconciliationSweeper
from marketcore.types import money_str

logger = logging.getLogger(__name__)


class UnconfiguredPaymentProcessor:
    """Stand-in for read-only commands; any payment call is an error."""

    def authorize(self, amount: Decimal, customer: str) -> str:
        raise RuntimeError("No payment processor configured (MARKETCORE_PAYMENT_PROCESSOR)")

    def capture(self, payment_ref: str) -> PaymentResult:
        raise RuntimeError("No payment processor configured (MARKETCORE_PAYMENT_PROCESSOR)")

    def refund(self, payment_ref: str) -> PaymentResult:
        raise RuntimeError("No payment processor configured (MARKETCORE_PAYMENT_PROCESSOR)")


def load_object(path: str) -> Any:
    """Import ``package.module:attribute``; classes are instantiated with no arguments."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got {path!r}")
    obj = getattr(importlib.import_module(module_name), attr)
    if isinstance(obj, type):
        obj = obj()
    return obj


def needs_payments(args) -> bool:
    """Whether the command may capture or refund payments."""
    if args.command == "sweep":
        return True
    return args.command == "batch" and args.batch_action == "evaluate"


def build_engine(args, config: SettlementConfig) -> SettlementEngine:
    """Build an engine on the configured store and collaborators."""
    if config.payment_processor:
        payments = load_object(config.payment_processor)
    elif needs_payments(args):
        raise ValueError(f"'{args.command}' needs MARKETCORE_PAYMENT_PROCESSOR to be set")
    else:
        payments = UnconfiguredPaymentProcessor()

    dispatcher = None
    if config.notification_dispatcher:
        dispatcher = load_object(config.notification_dispatcher)

    db_path = args.db or config.database_path
    if db_path:
        return SettlementEngine.sqlite(db_path, payments, dispatcher=dispatcher, config=config)
    if config.supabase_url:
        return SettlementEngine.supabase(payments, dispatcher=dispatcher, config=config)
    raise ValueError("No storage configured: pass --db or set MARKETCORE_DATABASE_PATH")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_sweep(args, engine: SettlementEngine):
    """Run one reconciliation sweep."""
    report = ReconciliationSweeper(engine).run()
    if args.json:
        _print_json(report.to_dict())
        return
    print("Reconciliation sweep")
    print("=" * 40)
    for name, value in report.to_dict().items():
        print(f"  {name.replace('_', ' '):<24} {value}")


def cmd_wallet(args, engine: SettlementEngine):
    """Handle wallet subcommands."""
    if args.wallet_action == "show":
        wallet = engine.wallet.get_wallet(args.vendor)
        if args.json:
            _print_json(wallet.to_dict())
            return
        print(f"Wallet for {wallet.vendor_id}")
        print(f"  Available: {money_str(wallet.available_balance)}")
        print(f"  Pending:   {money_str(wallet.pending_balance)}")
        print(f"  Earned:    {money_str(wallet.total_earned)}")
        print(f"  Withdrawn: {money_str(wallet.total_withdrawn)}")

    elif args.wallet_action == "reconcile":
        result = engine.wallet.reconcile_wallet(args.vendor)
        if args.json:
            _print_json(result.to_dict())
            return
        if result.previous is None:
            print(f"No snapshot for {args.vendor}; stored a fresh one.")
        elif not result.has_drift:
            print(f"Wallet for {args.vendor} matches its snapshot.")
        else:
            print(f"Wallet for {args.vendor} had drifted:")
            for name, delta in result.drift.items():
                print(f"  {name}: {money_str(delta)}")
        print(f"  Available: {money_str(result.wallet.available_balance)}")


def cmd_credits(args, engine: SettlementEngine):
    """Handle credits subcommands."""
    if args.credits_action == "balance":
        balance = engine.credits.balance(args.user)
        if args.json:
            _print_json({"user_id": args.user, "balance": money_str(balance)})
        else:
            print(f"{args.user}: {money_str(balance)} credits available")

    elif args.credits_action == "history":
        entries = engine.credits.history(args.user, limit=args.limit)
        if args.json:
            _print_json([e.to_dict() for e in entries])
            return
        if not entries:
            print(f"No credit history for {args.user}.")
            return
        for entry in entries:
            state = "used" if entry.is_used else ("expired" if entry.is_expired() else "available")
            print(f"  {entry.created_at:%Y-%m-%d}  {money_str(entry.amount):>10}  {entry.source:<20} {state}")


def cmd_batch(args, engine: SettlementEngine):
    """Handle batch subcommands."""
    if args.batch_action == "show":
        batch = engine.batches.get_batch(args.batch)
        orders = engine.escrow.orders_for(batch.id)
        if args.json:
            data = batch.to_dict()
            data["orders"] = [o.to_dict() for o in orders]
            _print_json(data)
            return
        print(f"Batch {batch.id} ({batch.status})")
        print(f"  Listing:  {batch.listing_id} in {batch.region}")
        print(f"  Quantity: {batch.current_quantity}/{batch.minimum_quantity} ({batch.progress:.0f}%)")
        print(f"  Deadline: {batch.deadline.isoformat()}")
        print(f"  Held:     {money_str(engine.escrow.total_held(batch.id))}")
        for order in orders:
            print(f"    {order.id}  {order.buyer_id:<20} {money_str(order.amount):>10}  {order.escrow_status}")

    elif args.batch_action == "evaluate":
        result = engine.batches.evaluate(args.batch)
        if args.json:
            _print_json(result.to_dict())
            return
        if not result.transitioned:
            print(f"Batch {args.batch} unchanged ({result.batch.status})")
            return
        print(f"Batch {args.batch} is now {result.batch.status}")
        if result.settlement is not None:
            s = result.settlement
            print(f"  {s.action}: {len(s.succeeded)} settled, {len(s.failed)} failed")


def main(argv: Optional[list] = None):
    parser = argparse.ArgumentParser(
        prog="marketcore",
        description="Settlement engine operator tools",
    )
    parser.add_argument("--db", help="SQLite database path", default=None)
    parser.add_argument("--json", "-j", action="store_true", help="Print JSON")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # sweep
    subparsers.add_parser("sweep", help="Run a reconciliation sweep")

    # wallet
    p_wallet = subparsers.add_parser("wallet", help="Vendor wallets")
    wallet_sub = p_wallet.add_subparsers(dest="wallet_action", required=True)
    w_show = wallet_sub.add_parser("show", help="Show a vendor's balances")
    w_show.add_argument("vendor", help="Vendor ID")
    w_reconcile = wallet_sub.add_parser("reconcile", help="Recompute and report drift")
    w_reconcile.add_argument("vendor", help="Vendor ID")

    # credits
    p_credits = subparsers.add_parser("credits", help="User credits")
    credits_sub = p_credits.add_subparsers(dest="credits_action", required=True)
    c_balance = credits_sub.add_parser("balance", help="Show available credit")
    c_balance.add_argument("user", help="User ID")
    c_history = credits_sub.add_parser("history", help="List credit entries, newest first")
    c_history.add_argument("user", help="User ID")
    c_history.add_argument("--limit", "-l", type=int, default=50)

    # batch
    p_batch = subparsers.add_parser("batch", help="Regional batches")
    batch_sub = p_batch.add_subparsers(dest="batch_action", required=True)
    b_show = batch_sub.add_parser("show", help="Show a batch and its orders")
    b_show.add_argument("batch", help="Batch ID")
    b_evaluate = batch_sub.add_parser("evaluate", help="Close a batch that is due")
    b_evaluate.add_argument("batch", help="Batch ID")

    args = parser.parse_args(argv)

    config = get_config()
    logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.WARNING))

    try:
        engine = build_engine(args, config)
    except (ValueError, ImportError, AttributeError) as e:
        logger.error(f"Failed to initialize engine: {e}")
        sys.exit(1)

    try:
        if args.command == "sweep":
            cmd_sweep(args, engine)
        elif args.command == "wallet":
            cmd_wallet(args, engine)
        elif args.command == "credits":
            cmd_credits(args, engine)
        elif args.command == "batch":
            cmd_batch(args, engine)
    except MarketcoreError as e:
        logger.error(f"{e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
