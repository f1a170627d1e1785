"""
Payment Record Database Model

Append-mostly payment ledger. stripe_invoice_id is the idempotency key.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import DateTime
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UUIDMixin


class PaymentRecordModel(UUIDMixin, TimestampMixin, table=True):
    """Maps to the 'payment_history' table."""
    
    __tablename__ = "payment_history"
    
    company_id: UUID = Field(foreign_key="companies.id", index=True, nullable=False)
    subscription_id: Optional[UUID] = Field(default=None, foreign_key="company_subscriptions.id")
    
    amount: Decimal = Field(default=Decimal("0.00"), max_digits=10, decimal_places=2)
    status: str = Field(default="pending", max_length=16)
    
    # Stripe IDs, kept as received for audit
    stripe_invoice_id: str = Field(unique=True, index=True, nullable=False)
    stripe_payment_intent_id: Optional[str] = Field(default=None)
    stripe_charge_id: Optional[str] = Field(default=None)
    stripe_customer_id: Optional[str] = Field(default=None, index=True)
    stripe_subscription_id: Optional[str] = Field(default=None, index=True)
    
    billing_period_start: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    billing_period_end: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    description: Optional[str] = Field(default=None)
    invoice_number: Optional[str] = Field(default=None, max_length=64)
    paid_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
