"""
Subscription Database Model

SQLModel table for company subscription persistence.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import DateTime
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UUIDMixin


class SubscriptionModel(UUIDMixin, TimestampMixin, table=True):
    """
    Subscription table, one row per company.
    
    Maps to the 'company_subscriptions' table.
    """
    
    __tablename__ = "company_subscriptions"
    
    company_id: UUID = Field(foreign_key="companies.id", unique=True, index=True, nullable=False)
    
    # Commercial terms
    plan: str = Field(default="free", max_length=32)
    price_per_seat: Decimal = Field(default=Decimal("0.00"), max_digits=10, decimal_places=2)
    seat_count: int = Field(default=0)
    billing_cycle: str = Field(default="monthly", max_length=16)
    next_billing_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    status: str = Field(default="trial", max_length=16)
    cancel_at_period_end: bool = Field(default=False)
    
    # Stripe IDs
    stripe_customer_id: Optional[str] = Field(default=None, unique=True, index=True)
    stripe_subscription_id: Optional[str] = Field(default=None, unique=True, index=True)
    stripe_price_id: Optional[str] = Field(default=None)
