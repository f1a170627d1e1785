"""
Webhook Event Repository

Attempt ledger for Stripe events. Records every delivery of an event id so
the ingress can skip events already processed and stop retrying events that
keep failing.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError

from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.base import ensure_utc, utc_now
from app.infrastructure.db.models.webhook_event import WebhookEventModel
from app.infrastructure.exceptions import NotFoundError
from app.domain.webhook_events import ProcessedWebhookEvent, WebhookEventStatus


logger = logging.getLogger(__name__)


class WebhookEventRepository:
    """Repository for the processed_webhook_events table."""
    
    async def get(self, event_id: str) -> Optional[ProcessedWebhookEvent]:
        """Get the ledger entry for an event, or None if never seen."""
        async with get_session_context() as session:
            model = await session.get(WebhookEventModel, event_id)
            return self._to_domain(model) if model else None
    
    async def begin_attempt(self, event_id: str, event_type: str) -> ProcessedWebhookEvent:
        """
        Register a delivery of an event.
        
        Creates the ledger entry on first delivery; otherwise returns the
        existing entry with last_attempt_at refreshed.
        
        Args:
            event_id: Stripe event ID
            event_type: Stripe event type
            
        Returns:
            Ledger entry as it stood before this attempt
        """
        try:
            async with get_session_context() as session:
                model = await session.get(WebhookEventModel, event_id)
                if model is None:
                    model = WebhookEventModel(event_id=event_id, event_type=event_type)
                    session.add(model)
                else:
                    model.last_attempt_at = utc_now()
                await session.flush()
                return self._to_domain(model)
        except IntegrityError:
            # Concurrent first delivery inserted the row first
            existing = await self.get(event_id)
            if existing is None:
                raise
            return existing
    
    async def mark_processed(self, event_id: str) -> ProcessedWebhookEvent:
        """Mark an event as fully handled."""
        async with get_session_context() as session:
            model = await self._require(session, event_id)
            model.status = WebhookEventStatus.PROCESSED.value
            model.processed_at = utc_now()
            model.last_error = None
            await session.flush()
            return self._to_domain(model)
    
    async def record_failure(
        self,
        event_id: str,
        error: str,
        max_attempts: int,
        retryable: bool = True,
    ) -> ProcessedWebhookEvent:
        """
        Count a failed attempt.
        
        The event is dead-lettered once attempts reach max_attempts, or
        immediately when the failure is not retryable.
        
        Returns:
            Updated ledger entry
        """
        async with get_session_context() as session:
            model = await self._require(session, event_id)
            model.attempts += 1
            model.last_error = error[:2000]
            
            if not retryable or model.attempts >= max_attempts:
                model.status = WebhookEventStatus.DEAD_LETTERED.value
                logger.error(
                    f"Webhook event {event_id} ({model.event_type}) dead-lettered "
                    f"after {model.attempts} attempt(s): {error}"
                )
            else:
                model.status = WebhookEventStatus.FAILED.value
            
            await session.flush()
            return self._to_domain(model)
    
    async def _require(self, session, event_id: str) -> WebhookEventModel:
        model = await session.get(WebhookEventModel, event_id)
        if model is None:
            raise NotFoundError(
                f"Webhook event {event_id} not registered",
                operation="update",
                table=WebhookEventModel.__tablename__,
            )
        return model
    
    def _to_domain(self, model: WebhookEventModel) -> ProcessedWebhookEvent:
        """Convert database model to domain entity."""
        return ProcessedWebhookEvent(
            event_id=model.event_id,
            event_type=model.event_type,
            status=WebhookEventStatus(model.status),
            attempts=model.attempts or 0,
            last_error=model.last_error,
            first_seen_at=ensure_utc(model.first_seen_at),
            last_attempt_at=ensure_utc(model.last_attempt_at),
            processed_at=ensure_utc(model.processed_at),
        )


_webhook_event_repo_instance: Optional[WebhookEventRepository] = None


def get_webhook_event_repository() -> WebhookEventRepository:
    """Get or create webhook event repository singleton."""
    global _webhook_event_repo_instance
    
    if _webhook_event_repo_instance is None:
        _webhook_event_repo_instance = WebhookEventRepository()
    
    return _webhook_event_repo_instance
