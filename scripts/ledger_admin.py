#!/usr/bin/env python3
"""
Usage ledger operator tool.

Runs ledger operations directly against the configured database backend
(STORAGE_BACKEND=database, DATABASE_URL). The in-memory backend is
process-local, so there is nothing for this tool to inspect.

Usage:
    # Show a user's full ledger
    python3 scripts/ledger_admin.py show user_123

    # Grant a catalog package (1, 5 or 10 try-ons)
    python3 scripts/ledger_admin.py grant-credits user_123 --package 5

    # Grant an arbitrary amount (goodwill, support)
    python3 scripts/ledger_admin.py grant-credits user_123 --count 2 --price 0

    # Downgrade immediately
    python3 scripts/ledger_admin.py revoke-subscription user_123 --reason chargeback

    # Clear upstream rate-limit windows
    python3 scripts/ledger_admin.py reset-rate-limits

    # Schema revision state
    python3 scripts/ledger_admin.py migrations
"""

import argparse
import asyncio
import sys

from app.config import settings
from app.db.migration_runner import check_migrations_status
from app.db.session import close_engines
from app.exceptions import BillingError
from app.observability import get_logger, setup_logging
from app.services.container import ServiceContainer, build_container
from app.services.plans import get_package
from app.services.rate_limiter import reset_all

logger = get_logger("ledger_admin")


async def show(container: ServiceContainer, args: argparse.Namespace) -> None:
    ledger = await container.ledger_service.get_ledger(args.user_id)
    print(ledger.model_dump_json(indent=2))


async def grant_credits(container: ServiceContainer, args: argparse.Namespace) -> None:
    if args.package is not None:
        package = get_package(args.package)
        count, price = package.count, package.price
    else:
        count, price = args.count, args.price

    grant_id = await container.ledger_service.add_credit_grant(
        args.user_id, count, price, external_payment_id=args.payment_id
    )
    print(f"Granted {count} credits to {args.user_id} ({grant_id})")


async def revoke_subscription(container: ServiceContainer, args: argparse.Namespace) -> None:
    subscription = await container.ledger_service.revoke_subscription(
        args.user_id, reason=args.reason
    )
    print(f"{args.user_id}: {subscription.tier.value}/{subscription.status.value}")


async def reset_rate_limits(container: ServiceContainer, args: argparse.Namespace) -> None:
    await reset_all(container.limiters)
    print(f"Reset rate-limit windows: {', '.join(container.limiters)}")


async def run(args: argparse.Namespace) -> int:
    container = build_container(settings)
    try:
        await args.handler(container, args)
        return 0
    except (BillingError, ValueError) as exc:
        logger.error("ledger_admin_failed", command=args.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await close_engines()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Inspect and adjust try-on usage ledgers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    show_parser = subparsers.add_parser("show", help="Print a user's ledger as JSON")
    show_parser.add_argument("user_id")
    show_parser.set_defaults(handler=show)

    grant_parser = subparsers.add_parser("grant-credits", help="Add a one-time credit grant")
    grant_parser.add_argument("user_id")
    amount = grant_parser.add_mutually_exclusive_group(required=True)
    amount.add_argument("--package", type=int, help="Catalog package size (1, 5 or 10)")
    amount.add_argument("--count", type=int, help="Number of credits")
    grant_parser.add_argument("--price", type=int, default=0, help="Price paid (with --count)")
    grant_parser.add_argument("--payment-id", help="External payment reference")
    grant_parser.set_defaults(handler=grant_credits)

    revoke_parser = subparsers.add_parser(
        "revoke-subscription", help="Downgrade to FREE immediately"
    )
    revoke_parser.add_argument("user_id")
    revoke_parser.add_argument("--reason", default="admin")
    revoke_parser.set_defaults(handler=revoke_subscription)

    reset_parser = subparsers.add_parser("reset-rate-limits", help="Clear all rate-limit windows")
    reset_parser.set_defaults(handler=reset_rate_limits)

    subparsers.add_parser("migrations", help="Show schema revision state")

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging()

    if settings.storage_backend != "database":
        print("STORAGE_BACKEND=database is required for ledger_admin", file=sys.stderr)
        sys.exit(2)

    if args.command == "migrations":
        status = check_migrations_status()
        print(f"current={status.current_revision} head={status.head_revision}")
        sys.exit(1 if status.pending else 0)

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
