"""
Stripe Webhook Router

Handles Stripe billing webhook events:
- signature verification against the configured endpoint secret
- dispatch to the entitlement reconciler (checkout, renewal, payment failure, cancellation, plan changes)
- always acknowledges with 200 once the payload is accepted so Stripe does not retry
"""
import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from core.factory import ServiceFactory
from core.responses import InvalidSignatureException, MalformedPayloadException, success_response
from services.entitlement_reconciler import EntitlementReconciler
from services.webhook_verifier import StripeWebhookVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks", "stripe"])


def get_webhook_verifier() -> StripeWebhookVerifier:
    return ServiceFactory.get_webhook_verifier()


def get_reconciler() -> EntitlementReconciler:
    return ServiceFactory.get_reconciler()


@router.get("/stripe")
async def stripe_webhook_get():
    return success_response(data={"ok": True}, message="stripe webhook alive")


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    verifier: StripeWebhookVerifier = Depends(get_webhook_verifier),
    reconciler: EntitlementReconciler = Depends(get_reconciler),
):
    raw = await request.body()
    logger.info(
        "[STRIPE] webhook received: len=%s, has_signature=%s",
        len(raw),
        bool(stripe_signature),
    )

    try:
        event = verifier.verify_and_decode(raw, stripe_signature)
    except (InvalidSignatureException, MalformedPayloadException) as e:
        return JSONResponse(status_code=e.status_code, content={"error": e.message})

    outcome = await reconciler.reconcile(event)
    logger.info(
        "[STRIPE] event %s processed: type=%s status=%s user_id=%s transaction=%s",
        event.id,
        outcome.event_type,
        outcome.status,
        outcome.user_id,
        outcome.transaction,
    )

    body = {"received": True}
    if outcome.error:
        body["error"] = outcome.error
    return body
