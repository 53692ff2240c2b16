#!/usr/bin/env python3
"""Command-line interface for the payments mirror.

Every command runs one reconciliation engine operation against the local
ledger and prints the result as JSON.

Usage:
    payments-mirror status
    payments-mirror create-payment --amount 150 --currency gbp --email buyer@example.com
    payments-mirror reconcile pi_3Nx...
    payments-mirror --mode live refund pi_3Nx... --amount 50 --reason duplicate
    payments-mirror sync
    payments-mirror clear-abandoned
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional

from pydantic import BaseModel

from ..config import Settings
from ..database import DatabaseManager, RefundReason
from ..errors import PaymentsMirrorError
from ..mode import ModeName
from .service import ReconciliationService, build_service

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def to_json(result: Any) -> str:
    """Serialise an engine result (model, list of models or dict) as JSON."""
    if isinstance(result, BaseModel):
        data = result.model_dump(mode="json")
    elif isinstance(result, list):
        data = [item.model_dump(mode="json") for item in result]
    else:
        data = result
    return json.dumps(data, indent=2)


async def execute(service: ReconciliationService, parsed_args: argparse.Namespace) -> Any:
    """Dispatch a parsed command to the engine.

    Args:
        service: Reconciliation service to act through.
        parsed_args: Parsed command-line arguments.

    Returns:
        The operation's result.
    """
    command = parsed_args.command
    if command == "status":
        return service.modes.get_active_mode()
    if command == "create-payment":
        return await service.create_payment(
            amount=parsed_args.amount,
            currency=parsed_args.currency,
            description=parsed_args.description,
            customer_email=parsed_args.email,
        )
    if command == "reconcile":
        return await service.reconcile_payment_status(parsed_args.payment_id)
    if command == "refund":
        return await service.create_refund(
            parsed_args.payment_id,
            amount=parsed_args.amount,
            reason=parsed_args.reason,
            notes=parsed_args.notes,
        )
    if command == "show":
        return await service.get_payment_details(parsed_args.payment_id)
    if command == "list-payments":
        return await service.list_payments(
            limit=parsed_args.limit, offset=parsed_args.offset, mode=parsed_args.only
        )
    if command == "list-refunds":
        return await service.list_refunds(
            limit=parsed_args.limit, offset=parsed_args.offset, mode=parsed_args.only
        )
    if command == "sync":
        return await service.sync_historical_data()
    if command == "clear-abandoned":
        return (await service.clear_abandoned_payments()).to_dict()
    raise ValueError(f"Unknown command: {command}")


async def run_command_async(
    parsed_args: argparse.Namespace,
    settings: Optional[Settings] = None,
) -> int:
    """Run one command against the configured database.

    Returns:
        Exit code (0 for success, 1 if the operation failed).
    """
    settings = settings or Settings()
    database_url = parsed_args.database_url or settings.database_url

    db_manager = DatabaseManager(database_url)
    await db_manager.initialize()
    try:
        service = build_service(settings, db_manager.session_factory)
        if parsed_args.mode:
            service.modes.switch_mode(parsed_args.mode)

        try:
            result = await execute(service, parsed_args)
        except PaymentsMirrorError as e:
            logger.error(f"{parsed_args.command} failed: {e.to_dict()}")
            print(json.dumps(e.to_dict(), indent=2))
            return 1

        print(to_json(result))
        return 0
    finally:
        await db_manager.shutdown()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="payments-mirror",
        description="Mirror and reconcile provider payments and refunds in a local ledger.",
    )
    parser.add_argument(
        "--mode", "-m",
        choices=[mode.value for mode in ModeName],
        help="Mode to run the command in (default: PAYMENTS_DEFAULT_MODE or test)",
    )
    parser.add_argument(
        "--database-url",
        help="Database URL (default: DATABASE_URL or a local SQLite file)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("status", help="Show the active mode")

    payment_parser = subparsers.add_parser("create-payment", help="Create a payment intent")
    payment_parser.add_argument(
        "--amount", "-a",
        type=int,
        required=True,
        help="Amount in minor units (e.g. 150 for 1.50)",
    )
    payment_parser.add_argument("--currency", "-c", default="gbp", help="Currency code (default: gbp)")
    payment_parser.add_argument("--description", "-d", help="Payment description")
    payment_parser.add_argument("--email", "-e", help="Customer email")

    reconcile_parser = subparsers.add_parser("reconcile", help="Refresh a payment's status from the provider")
    reconcile_parser.add_argument("payment_id", help="Provider payment intent id")

    refund_parser = subparsers.add_parser("refund", help="Refund a succeeded payment")
    refund_parser.add_argument("payment_id", help="Provider payment intent id")
    refund_parser.add_argument(
        "--amount", "-a",
        type=int,
        help="Amount in minor units (default: remaining balance)",
    )
    refund_parser.add_argument(
        "--reason", "-r",
        choices=[reason.value for reason in RefundReason],
        default=RefundReason.REQUESTED_BY_CUSTOMER.value,
        help="Refund reason (default: requested_by_customer)",
    )
    refund_parser.add_argument("--notes", "-n", help="Operator notes")

    show_parser = subparsers.add_parser("show", help="Show a payment with its refunds")
    show_parser.add_argument("payment_id", help="Provider payment intent id")

    for name, help_text in (("list-payments", "List stored payments"), ("list-refunds", "List stored refunds")):
        list_parser = subparsers.add_parser(name, help=help_text)
        list_parser.add_argument("--limit", type=int, default=50, help="Maximum records (default: 50)")
        list_parser.add_argument("--offset", type=int, default=0, help="Records to skip (default: 0)")
        list_parser.add_argument(
            "--only",
            choices=[mode.value for mode in ModeName],
            help="Only records of this mode",
        )

    subparsers.add_parser("sync", help="Import provider history of the active mode")
    subparsers.add_parser(
        "clear-abandoned",
        help="Delete local payments of the active mode that never got a payment method",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 2

    return asyncio.run(run_command_async(parsed_args))


if __name__ == "__main__":
    sys.exit(main())
