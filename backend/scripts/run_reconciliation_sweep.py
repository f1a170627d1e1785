"""
Run a reconciliation sweep against Stripe.

Backfills paid invoices missing from the local payment ledger, for one
Stripe subscription or for every linked subscription.

Usage:
    python scripts/run_reconciliation_sweep.py
    python scripts/run_reconciliation_sweep.py --subscription sub_123 --limit 25
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config.settings import settings
from app.infrastructure.db.database import close_db
from app.infrastructure.services.reconciliation_sweeper import get_reconciliation_sweeper


logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


MAX_INVOICE_LIMIT = 100


def invoice_limit(value: str) -> int:
    """argparse type for --limit; Stripe pages hold 1 to 100 invoices."""
    limit = int(value)
    if not 1 <= limit <= MAX_INVOICE_LIMIT:
        raise argparse.ArgumentTypeError(f"must be between 1 and {MAX_INVOICE_LIMIT}, got {limit}")
    return limit


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Backfill paid Stripe invoices into the payment ledger")
    parser.add_argument("--subscription", help="Sweep a single Stripe subscription ID")
    parser.add_argument(
        "--limit", type=invoice_limit, default=None, help="Recent invoices to inspect per subscription (1-100)"
    )
    return parser


async def main(subscription_id: Optional[str], limit: Optional[int]) -> int:
    """Run the sweep and print the result."""
    sweeper = get_reconciliation_sweeper()
    try:
        if subscription_id:
            count = await sweeper.sweep(subscription_id, limit)
            print(f"Backfilled {count} payment(s) for {subscription_id}")
            return 0

        summary = await sweeper.sweep_all(limit)
        print(
            f"Swept {summary.subscriptions_swept} subscription(s): "
            f"{summary.payments_backfilled} backfilled, {summary.failures} failure(s)"
        )
        return 1 if summary.failures else 0
    finally:
        await close_db()


if __name__ == "__main__":
    args = build_parser().parse_args()
    sys.exit(asyncio.run(main(args.subscription, args.limit)))
