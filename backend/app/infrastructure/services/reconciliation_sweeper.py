"""
Reconciliation Sweeper

Backfills paid Stripe invoices missing from the local payment ledger,
closing gaps left by webhooks that were never delivered. Runs after
subscription events, on demand from the admin API and the CLI script, and
periodically from the app lifespan.

Safe to run any number of times: recording goes through the PaymentRecorder
idempotency gate.
"""

import asyncio
import logging
from typing import Optional

from app.config.settings import get_settings
from app.domain.billing import PaymentStatus, SweepSummary
from app.infrastructure.exceptions import TideflowError
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
    get_subscription_repository,
)
from app.infrastructure.db.repositories.payment_repository import (
    PaymentRepository,
    get_payment_repository,
)
from app.infrastructure.payments.stripe_service import (
    StripeService,
    get_stripe_service,
)
from app.infrastructure.services.entity_resolver import (
    EntityResolver,
    get_entity_resolver,
)
from app.infrastructure.services.payment_recorder import (
    PaymentRecorder,
    get_payment_recorder,
)


logger = logging.getLogger(__name__)

# Local statuses a paid Stripe invoice may overwrite
REPAIRABLE_STATUSES = (PaymentStatus.FAILED, PaymentStatus.PENDING)


class ReconciliationSweeper:
    """Compares recent Stripe invoices against the local ledger."""

    def __init__(
        self,
        stripe_service: Optional[StripeService] = None,
        subscription_repo: Optional[SubscriptionRepository] = None,
        payment_repo: Optional[PaymentRepository] = None,
        resolver: Optional[EntityResolver] = None,
        recorder: Optional[PaymentRecorder] = None,
    ):
        self._stripe = stripe_service or get_stripe_service()
        self._subscriptions = subscription_repo or get_subscription_repository()
        self._payments = payment_repo or get_payment_repository()
        self._resolver = resolver or get_entity_resolver()
        self._recorder = recorder or get_payment_recorder()

    async def sweep(self, stripe_subscription_id: str, max_invoices: Optional[int] = None) -> int:
        """
        Backfill paid invoices of one Stripe subscription.

        Args:
            stripe_subscription_id: Stripe subscription ID
            max_invoices: How many recent invoices to inspect
                (defaults to RECONCILIATION_SWEEP_LIMIT)

        A paid invoice whose local row is still FAILED or PENDING (its paid
        event was lost) is promoted to SUCCEEDED and counts as backfilled,
        the same as a missing row.

        Returns:
            Number of payment records created or promoted to SUCCEEDED

        Raises:
            StripeServiceError: If listing invoices fails
        """
        limit = max_invoices or get_settings().reconciliation_sweep_limit
        invoices = await self._stripe.list_invoices(stripe_subscription_id, limit=limit)

        subscription = None
        backfilled = 0

        for invoice in invoices:
            if not invoice.is_paid or not invoice.amount_paid or invoice.amount_paid <= 0:
                continue
            existing = await self._payments.get_by_stripe_invoice_id(invoice.id)
            if existing is not None and existing.status not in REPAIRABLE_STATUSES:
                continue

            if subscription is None:
                subscription = await self._resolver.resolve(
                    stripe_subscription_id=stripe_subscription_id,
                    stripe_customer_id=invoice.customer,
                )
                if subscription is None:
                    logger.warning(
                        f"Sweep of {stripe_subscription_id} found unrecorded invoice {invoice.id} "
                        f"but no local subscription"
                    )
                    return backfilled

            record, created = await self._recorder.try_record(
                subscription, invoice, PaymentStatus.SUCCEEDED
            )
            if created or (existing is not None and record.status == PaymentStatus.SUCCEEDED):
                backfilled += 1

        if backfilled:
            logger.info(f"Sweep of {stripe_subscription_id} backfilled {backfilled} payment(s)")
        else:
            logger.debug(f"Sweep of {stripe_subscription_id} found no missing payments")
        return backfilled

    async def sweep_all(self, max_invoices: Optional[int] = None) -> SweepSummary:
        """
        Sweep every subscription linked to Stripe.

        A failure on one subscription is logged and counted; the others
        are still swept.
        """
        summary = SweepSummary()

        for subscription in await self._subscriptions.list_linked():
            try:
                summary.payments_backfilled += await self.sweep(
                    subscription.stripe_subscription_id, max_invoices
                )
                summary.subscriptions_swept += 1
            except TideflowError as e:
                summary.failures += 1
                logger.error(
                    f"Sweep failed for subscription {subscription.id} "
                    f"({subscription.stripe_subscription_id}): {e}"
                )

        logger.info(
            f"Reconciliation sweep: {summary.subscriptions_swept} subscription(s), "
            f"{summary.payments_backfilled} backfilled, {summary.failures} failure(s)"
        )
        return summary


async def run_periodic_sweeps(
    sweeper: ReconciliationSweeper,
    interval_seconds: int,
    max_invoices: Optional[int] = None,
) -> None:
    """Sweep all subscriptions every interval_seconds until cancelled."""
    logger.info(f"Periodic reconciliation sweep every {interval_seconds}s")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await sweeper.sweep_all(max_invoices)
        except Exception as e:
            # Next tick retries
            logger.exception(f"Periodic reconciliation sweep failed: {e}")


# =============================================================================
# Singleton Instance
# =============================================================================

_sweeper_instance: Optional[ReconciliationSweeper] = None


def get_reconciliation_sweeper() -> ReconciliationSweeper:
    """Get or create reconciliation sweeper singleton."""
    global _sweeper_instance

    if _sweeper_instance is None:
        _sweeper_instance = ReconciliationSweeper()

    return _sweeper_instance
