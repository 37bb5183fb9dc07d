"""
Payments API Routes
Stripe webhook that credits purchased tokens
"""
import logging
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.database.connection import get_database, StorageUnavailableError
from app.payments.bridge import (
    CHECKOUT_COMPLETED,
    WebhookRejected,
    fulfill_checkout_session,
    parse_webhook_event,
)
from config import settings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/stripe", tags=["Payments"])


@router.post("/webhook")
async def stripe_webhook(request: Request):
    """
    Handle Stripe webhook events

    Errors use the {"error": ...} shape Stripe's dashboard shows. Only 5xx
    answers make Stripe redeliver. The database is only touched once the
    delivery is verified.
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("[WEBHOOK] STRIPE_WEBHOOK_SECRET is not set")
        return JSONResponse(status_code=500, content={"error": "Webhook secret not configured"})

    body = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = parse_webhook_event(body, signature, settings.STRIPE_WEBHOOK_SECRET)
    except WebhookRejected as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    event_type = event.get("type")
    logger.info(f"[WEBHOOK] Event {event.get('id')}: {event_type}")

    if event_type != CHECKOUT_COMPLETED:
        return {"received": True}

    session = (event.get("data") or {}).get("object") or {}

    try:
        db = await get_database()
        await fulfill_checkout_session(session, db)
    except WebhookRejected as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except StorageUnavailableError as e:
        logger.error(f"[WEBHOOK] Storage unavailable for session {session.get('id')}: {str(e)}")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})
    except Exception as e:
        logger.error(f"[WEBHOOK] Processing error for session {session.get('id')}: {str(e)}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    return {"received": True}
