"""
Processed Webhook Event Database Model

Attempt ledger for Stripe events: duplicate detection and the retry bound.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.infrastructure.db.models.base import utc_now


class WebhookEventModel(SQLModel, table=True):
    """Maps to the 'processed_webhook_events' table."""
    
    __tablename__ = "processed_webhook_events"
    
    event_id: str = Field(primary_key=True, max_length=255)
    event_type: str = Field(max_length=128)
    status: str = Field(default="processing", max_length=32)
    attempts: int = Field(default=0)
    last_error: Optional[str] = Field(default=None)
    
    first_seen_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    last_attempt_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    processed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
