"""
Stripe Webhook Handler

Receives Stripe webhook deliveries and hands the raw body to the ingress.

Status codes:
- 400: missing or invalid signature (nothing processed)
- 200: applied, skipped, or failed without retry (dead-lettered)
- 500: failed and retryable; Stripe redelivers
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.api.dependencies import get_ingress
from app.infrastructure.exceptions import WebhookVerificationError
from app.infrastructure.services.webhook_ingress import WebhookIngress


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    ingress: WebhookIngress = Depends(get_ingress),
):
    """
    Handle Stripe webhook events.
    
    Verifies the signature before anything else; the event is handled
    synchronously before responding.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    
    try:
        result = await ingress.process(payload, signature)
    except WebhookVerificationError as e:
        logger.error(f"Webhook signature verification failed: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message,
        )
    
    outcome = result.outcome
    return JSONResponse(
        status_code=result.http_status,
        content={
            "status": outcome.kind.value,
            "event_id": result.event_id,
            "event_type": result.event_type,
            "reason": outcome.reason,
            "error": outcome.error,
        },
    )
