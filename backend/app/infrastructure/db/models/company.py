"""
Company Database Model

Billing slice of the company aggregate. The company itself is owned by the
company service; billing only reads it and writes plan and seat ceiling.
"""

from typing import Optional

from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UUIDMixin


class CompanyModel(UUIDMixin, TimestampMixin, table=True):
    """Maps to the 'companies' table."""
    
    __tablename__ = "companies"
    
    name: str = Field(max_length=255)
    billing_email: Optional[str] = Field(default=None, max_length=255)
    domain: Optional[str] = Field(default=None, max_length=255)
    
    # Written by billing on plan changes
    subscription_plan: str = Field(default="free", max_length=32)
    max_employees: int = Field(default=7)
