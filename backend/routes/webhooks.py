"""Webhook Routes - Stripe billing events.

POST /billing-webhook - Main Stripe webhook endpoint
POST /api/webhook/stripe - Alias (Stripe may be configured with this URL)

Only a signature failure is answered with a non-2xx; every verified event
is acknowledged with 200 so Stripe does not retry processing errors.
"""
from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
import logging

from dependencies import get_db, get_webhook_service
from services.email_service import email_service
from services.side_effects import fire_and_forget
from services.stripe_webhook_service import StripeWebhookService

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, service: StripeWebhookService, stripe_signature: str = None):
    try:
        payload = await request.body()
        success, message, details = await service.process_webhook(
            payload=payload,
            signature=stripe_signature or "",
        )
    except Exception as e:
        logger.exception(f"Stripe webhook error: {e}")
        fire_and_forget(
            "stripe_webhook_failure_admin_email",
            email_service.send_admin_alert(
                subject="[Admin] Stripe webhook processing failure",
                text_body=f"Stripe webhook handler raised an exception.\n\nError: {str(e)[:1000]}",
                db=get_db(),
            ),
        )
        # Return 200 to prevent Stripe retries - we've logged the error
        return {"received": True, "status": "error", "message": str(e)}

    if not success:
        logger.error(f"Webhook rejected: {message}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"received": False, "error": message, "details": details},
        )
    return {"received": True, "status": "received", "message": message, "details": details}


@router.post("/billing-webhook")
async def billing_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    service: StripeWebhookService = Depends(get_webhook_service),
):
    """Handle Stripe webhooks at /billing-webhook"""
    return await _handle_stripe_webhook(request, service, stripe_signature)


@router.post("/api/webhook/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    service: StripeWebhookService = Depends(get_webhook_service),
):
    """Handle Stripe webhooks at /api/webhook/stripe (alias)"""
    return await _handle_stripe_webhook(request, service, stripe_signature)
