"""
Payment Recorder

Materializes payment ledger rows from Stripe invoices, exactly once per
invoice ID. The unique constraint on stripe_invoice_id is the concurrency
guard: a losing concurrent insert gets DuplicateError and returns the row
that won.

Status rules per invoice:
- SUCCEEDED is terminal; nothing overwrites it.
- A FAILED (or pending) row is promoted to SUCCEEDED when the invoice is paid.
- A failure never downgrades SUCCEEDED.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from app.domain.billing import PaymentRecord, PaymentStatus, Subscription
from app.domain.billing_rules import cents_to_amount, extract_invoice_amount
from app.domain.webhook_events import InvoiceSnapshot
from app.infrastructure.exceptions import DuplicateError
from app.infrastructure.db.repositories.payment_repository import (
    PaymentRepository,
    get_payment_repository,
)


logger = logging.getLogger(__name__)


class PaymentRecorder:
    """Idempotent writer for the payment ledger."""

    def __init__(self, payment_repo: Optional[PaymentRepository] = None):
        self._payments = payment_repo or get_payment_repository()

    async def try_record(
        self,
        subscription: Subscription,
        invoice: InvoiceSnapshot,
        status: PaymentStatus = PaymentStatus.SUCCEEDED,
        amount: Optional[Decimal] = None,
    ) -> tuple[PaymentRecord, bool]:
        """
        Record an invoice payment unless the invoice is already recorded.

        Args:
            subscription: Resolved local subscription
            invoice: Stripe invoice snapshot
            status: Status for a new row
            amount: Explicit amount; defaults to the invoice amount fallback chain

        Returns:
            Tuple of (record, created) where created is False when the
            invoice was already in the ledger
        """
        existing = await self._payments.get_by_stripe_invoice_id(invoice.id)
        if existing is not None:
            return await self._reconcile_existing(existing, status), False

        record = self._build_record(
            subscription,
            invoice,
            status,
            amount if amount is not None else extract_invoice_amount(invoice),
        )

        try:
            created = await self._payments.create(record)
        except DuplicateError:
            # Lost an insert race against a concurrent delivery
            existing = await self._payments.get_by_stripe_invoice_id(invoice.id)
            if existing is None:
                raise
            logger.info(f"Payment for invoice {invoice.id} recorded concurrently, using existing row")
            return await self._reconcile_existing(existing, status), False

        logger.info(
            f"Recorded {created.status.value} payment of {created.amount} for invoice {invoice.id} "
            f"(company {created.company_id})"
        )
        return created, True

    async def record(
        self,
        subscription: Subscription,
        invoice: InvoiceSnapshot,
        status: PaymentStatus = PaymentStatus.SUCCEEDED,
        amount: Optional[Decimal] = None,
    ) -> PaymentRecord:
        """Record an invoice payment and return the ledger row."""
        record, _ = await self.try_record(subscription, invoice, status, amount)
        return record

    async def record_failure(
        self,
        subscription: Subscription,
        invoice: InvoiceSnapshot,
    ) -> PaymentRecord:
        """
        Record a failed payment attempt for an invoice.

        Inserts a FAILED row with the amount due when the invoice is new,
        otherwise marks the existing row FAILED unless it already SUCCEEDED.
        """
        existing = await self._payments.get_by_stripe_invoice_id(invoice.id)
        if existing is None:
            amount_due = (
                cents_to_amount(invoice.amount_due)
                if invoice.amount_due is not None
                else extract_invoice_amount(invoice)
            )
            record, created = await self.try_record(
                subscription, invoice, PaymentStatus.FAILED, amount_due
            )
            if created:
                return record
            existing = record

        if existing.status == PaymentStatus.SUCCEEDED:
            logger.info(
                f"Ignoring failure for invoice {invoice.id}: payment already succeeded"
            )
            return existing
        if existing.status == PaymentStatus.FAILED:
            return existing

        logger.info(f"Payment for invoice {invoice.id}: {existing.status.value} -> failed")
        return await self._payments.update_status(invoice.id, PaymentStatus.FAILED)

    async def _reconcile_existing(
        self,
        existing: PaymentRecord,
        status: PaymentStatus,
    ) -> PaymentRecord:
        """Apply the only allowed in-place transition: promotion to SUCCEEDED."""
        if status == PaymentStatus.SUCCEEDED and existing.status != PaymentStatus.SUCCEEDED:
            logger.info(
                f"Payment for invoice {existing.stripe_invoice_id}: "
                f"{existing.status.value} -> succeeded"
            )
            return await self._payments.update_status(
                existing.stripe_invoice_id,
                PaymentStatus.SUCCEEDED,
                paid_at=datetime.now(timezone.utc),
            )

        logger.debug(f"Invoice {existing.stripe_invoice_id} already recorded, skipping")
        return existing

    def _build_record(
        self,
        subscription: Subscription,
        invoice: InvoiceSnapshot,
        status: PaymentStatus,
        amount: Decimal,
    ) -> PaymentRecord:
        return PaymentRecord(
            company_id=subscription.company_id,
            subscription_id=subscription.id,
            amount=amount,
            status=status,
            stripe_invoice_id=invoice.id,
            stripe_payment_intent_id=invoice.payment_intent,
            stripe_charge_id=invoice.charge,
            stripe_customer_id=invoice.customer or subscription.stripe_customer_id,
            stripe_subscription_id=invoice.subscription or subscription.stripe_subscription_id,
            billing_period_start=invoice.period_start,
            billing_period_end=invoice.period_end,
            description=invoice.description,
            invoice_number=invoice.number,
            paid_at=datetime.now(timezone.utc) if status == PaymentStatus.SUCCEEDED else None,
        )


# =============================================================================
# Singleton Instance
# =============================================================================

_payment_recorder_instance: Optional[PaymentRecorder] = None


def get_payment_recorder() -> PaymentRecorder:
    """Get or create payment recorder singleton."""
    global _payment_recorder_instance

    if _payment_recorder_instance is None:
        _payment_recorder_instance = PaymentRecorder()

    return _payment_recorder_instance
