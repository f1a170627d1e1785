"""
Payment Repository

Data access layer for the payment ledger (payment_history).
The Stripe invoice ID is unique; a conflicting insert surfaces as DuplicateError.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlmodel import select
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.base import ensure_utc, parse_uuid
from app.infrastructure.db.models.payment_record import PaymentRecordModel
from app.infrastructure.exceptions import DuplicateError, NotFoundError
from app.domain.billing import PaymentRecord, PaymentStatus


logger = logging.getLogger(__name__)


class PaymentRepository:
    """Repository for payment records with domain model mapping."""
    
    # =========================================================================
    # Query Methods
    # =========================================================================
    
    async def get_by_stripe_invoice_id(
        self,
        stripe_invoice_id: str,
    ) -> Optional[PaymentRecord]:
        """
        Get payment record by Stripe invoice ID.
        
        Args:
            stripe_invoice_id: Stripe invoice ID (idempotency key)
            
        Returns:
            PaymentRecord domain model or None
        """
        async with get_session_context() as session:
            statement = select(PaymentRecordModel).where(
                PaymentRecordModel.stripe_invoice_id == stripe_invoice_id
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()
            
            if model:
                return self._to_domain(model)
            
            return None
    
    async def list_by_company(self, company_id: str, limit: int = 50) -> list[PaymentRecord]:
        """List a company's payments, newest first."""
        company_uuid = parse_uuid(company_id)
        if company_uuid is None:
            return []
        
        async with get_session_context() as session:
            statement = (
                select(PaymentRecordModel)
                .where(PaymentRecordModel.company_id == company_uuid)
                .order_by(PaymentRecordModel.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]
    
    async def sum_succeeded_by_company(self, company_id: str) -> tuple[Decimal, int]:
        """
        Total and count of SUCCEEDED payments for a company.
        
        Returns:
            Tuple of (total amount, number of payments)
        """
        company_uuid = parse_uuid(company_id)
        if company_uuid is None:
            return Decimal("0.00"), 0
        
        async with get_session_context() as session:
            statement = select(
                func.coalesce(func.sum(PaymentRecordModel.amount), 0),
                func.count(PaymentRecordModel.id),
            ).where(
                PaymentRecordModel.company_id == company_uuid,
                PaymentRecordModel.status == PaymentStatus.SUCCEEDED.value,
            )
            result = await session.execute(statement)
            total, count = result.one()
            
            return Decimal(str(total)).quantize(Decimal("0.01")), int(count)
    
    # =========================================================================
    # Command Methods
    # =========================================================================
    
    async def create(self, record: PaymentRecord) -> PaymentRecord:
        """
        Insert a new payment record.
        
        Args:
            record: PaymentRecord domain model
            
        Returns:
            Created record with ID
            
        Raises:
            DuplicateError: If a record for the invoice already exists
        """
        try:
            async with get_session_context() as session:
                model = self._to_model(record)
                session.add(model)
                await session.flush()
                await session.refresh(model)
                created = self._to_domain(model)
        except IntegrityError as e:
            raise DuplicateError(
                f"Payment for invoice {record.stripe_invoice_id} already exists",
                operation="create",
                table=PaymentRecordModel.__tablename__,
                original_error=e,
            )
        
        return created
    
    async def update_status(
        self,
        stripe_invoice_id: str,
        status: PaymentStatus,
        paid_at: Optional[datetime] = None,
    ) -> PaymentRecord:
        """
        Change the status of an existing record. Only status (and paid_at) mutate.
        
        Raises:
            NotFoundError: If no record exists for the invoice
        """
        async with get_session_context() as session:
            statement = select(PaymentRecordModel).where(
                PaymentRecordModel.stripe_invoice_id == stripe_invoice_id
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()
            
            if not model:
                raise NotFoundError(
                    f"Payment for invoice {stripe_invoice_id} not found",
                    operation="update_status",
                    table=PaymentRecordModel.__tablename__,
                )
            
            model.status = status.value
            if paid_at is not None:
                model.paid_at = paid_at
            
            await session.flush()
            await session.refresh(model)
            return self._to_domain(model)
    
    # =========================================================================
    # Mapping Methods
    # =========================================================================
    
    def _to_domain(self, model: PaymentRecordModel) -> PaymentRecord:
        """Convert database model to domain entity."""
        return PaymentRecord(
            id=str(model.id),
            company_id=str(model.company_id),
            subscription_id=str(model.subscription_id) if model.subscription_id else None,
            amount=model.amount,
            status=PaymentStatus(model.status),
            stripe_invoice_id=model.stripe_invoice_id,
            stripe_payment_intent_id=model.stripe_payment_intent_id,
            stripe_charge_id=model.stripe_charge_id,
            stripe_customer_id=model.stripe_customer_id,
            stripe_subscription_id=model.stripe_subscription_id,
            billing_period_start=ensure_utc(model.billing_period_start),
            billing_period_end=ensure_utc(model.billing_period_end),
            description=model.description,
            invoice_number=model.invoice_number,
            paid_at=ensure_utc(model.paid_at),
            created_at=ensure_utc(model.created_at),
        )
    
    def _to_model(self, domain: PaymentRecord) -> PaymentRecordModel:
        """Convert domain entity to database model."""
        return PaymentRecordModel(
            company_id=parse_uuid(domain.company_id),
            subscription_id=parse_uuid(domain.subscription_id),
            amount=domain.amount,
            status=domain.status.value,
            stripe_invoice_id=domain.stripe_invoice_id,
            stripe_payment_intent_id=domain.stripe_payment_intent_id,
            stripe_charge_id=domain.stripe_charge_id,
            stripe_customer_id=domain.stripe_customer_id,
            stripe_subscription_id=domain.stripe_subscription_id,
            billing_period_start=domain.billing_period_start,
            billing_period_end=domain.billing_period_end,
            description=domain.description,
            invoice_number=domain.invoice_number,
            paid_at=domain.paid_at,
        )


# =============================================================================
# Singleton Instance
# =============================================================================

_payment_repo_instance: Optional[PaymentRepository] = None


def get_payment_repository() -> PaymentRepository:
    """Get or create payment repository singleton."""
    global _payment_repo_instance
    
    if _payment_repo_instance is None:
        _payment_repo_instance = PaymentRepository()
    
    return _payment_repo_instance
