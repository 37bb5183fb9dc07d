"""
Stripe Payment Bridge
Verifies webhook deliveries and credits purchased tokens exactly once
"""
import json
import logging
from datetime import datetime
from typing import Dict, Optional

import stripe
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from app.credits.manager import TokenManager
from app.database.connection import storage_guard
from app.database.models import PaymentModel, PaymentStatus, SpendingAction
from app.utils.serializers import to_object_id

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class WebhookRejected(ValueError):
    """Delivery that must be answered with 400 and no side effects"""


def parse_webhook_event(payload: bytes, signature: Optional[str], secret: str) -> Dict:
    """
    Verify the Stripe-Signature header and decode the event

    Raises:
        WebhookRejected: If the signature is missing or does not match,
            or the body is not a UTF-8 JSON object
    """
    if not signature:
        raise WebhookRejected("No signature provided")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise WebhookRejected("Invalid payload")

    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"[WEBHOOK] Signature verification failed: {str(e)}")
        raise WebhookRejected("Invalid signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise WebhookRejected("Invalid payload")

    if not isinstance(event, dict):
        raise WebhookRejected("Invalid payload")

    return event


def parse_purchase(session: Dict) -> PaymentModel:
    """
    Build the payment record for a completed checkout session

    Raises:
        WebhookRejected: If metadata lacks a valid userId or a positive
            integer token count
    """
    metadata = session.get("metadata") or {}
    user_id = metadata.get("userId")
    raw_tokens = metadata.get("tokens")

    if not user_id or raw_tokens in (None, ""):
        logger.error(f"[WEBHOOK] Missing metadata in session {session.get('id')}: {metadata}")
        raise WebhookRejected("Missing required metadata")

    if to_object_id(user_id) is None:
        raise WebhookRejected("Invalid userId in metadata")

    try:
        tokens = int(str(raw_tokens).strip())
    except ValueError:
        raise WebhookRejected("Invalid tokens in metadata")

    if tokens <= 0:
        raise WebhookRejected("Invalid tokens in metadata")

    session_id = session.get("id")
    if not session_id:
        raise WebhookRejected("Missing session id")

    return PaymentModel(
        userId=user_id,
        stripeSessionId=session_id,
        stripePaymentIntentId=session.get("payment_intent"),
        amount=session.get("amount_total") or 0,
        currency=session.get("currency") or "usd",
        tokensAdded=tokens
    )


async def _credit_payment(payment: Dict, db: AsyncIOMotorDatabase) -> Optional[int]:
    """
    Credit a recorded payment and mark it completed

    The increment only applies while the session is absent from the user's
    creditedPaymentSessions, so concurrent deliveries credit once.

    Returns:
        Balance after the credit, or None if the session was already credited
    """
    session_id = payment["stripeSessionId"]
    tokens = payment["tokensAdded"]
    dollars = (payment.get("amount") or 0) / 100

    balance = await TokenManager.apply_delta(
        payment["userId"],
        tokens,
        SpendingAction.TOKEN_PURCHASE,
        f"Purchased {tokens} tokens for ${dollars:.2f}",
        db,
        guard={"creditedPaymentSessions": {"$ne": session_id}},
        add_to_set={"creditedPaymentSessions": session_id},
        paymentSessionId=session_id
    )

    if balance is None:
        logger.info(f"[WEBHOOK] Session {session_id} already credited by another delivery")
        return None

    await _mark_completed(session_id, db)
    return balance


async def _mark_completed(session_id: str, db: AsyncIOMotorDatabase) -> None:
    with storage_guard("complete payment"):
        await db.payments.update_one(
            {"stripeSessionId": session_id},
            {"$set": {"status": PaymentStatus.COMPLETED.value, "updatedAt": datetime.utcnow()}}
        )


async def fulfill_checkout_session(session: Dict, db: AsyncIOMotorDatabase) -> Dict:
    """
    Credit a completed checkout session once, however often it is delivered

    The unique index on payments.stripeSessionId keeps one payment row per
    session. A replay finding a pending payment with no matching ledger
    entry finishes the interrupted credit; the session guard on the user
    document stops a replay racing the first delivery from crediting twice.

    Returns:
        {"credited": bool, "replay": bool}

    Raises:
        WebhookRejected: On bad metadata or an unknown user
        StorageUnavailableError: If MongoDB is unreachable
    """
    purchase = parse_purchase(session)

    with storage_guard("load purchasing user"):
        user = await db.users.find_one({"_id": to_object_id(purchase.userId)}, {"_id": 1})
    if not user:
        raise WebhookRejected("Unknown user in metadata")

    document = purchase.model_dump()
    try:
        with storage_guard("record payment"):
            await db.payments.insert_one(document)
    except DuplicateKeyError:
        return await _handle_replay(purchase.stripeSessionId, db)

    balance = await _credit_payment(document, db)
    if balance is not None:
        logger.info(f"[WEBHOOK] Added {purchase.tokensAdded} tokens to user {purchase.userId} (session {purchase.stripeSessionId})")
    return {"credited": balance is not None, "replay": False}


async def _handle_replay(session_id: str, db: AsyncIOMotorDatabase) -> Dict:
    with storage_guard("load payment"):
        existing = await db.payments.find_one({"stripeSessionId": session_id})

    if existing.get("status") == PaymentStatus.COMPLETED.value:
        logger.info(f"[WEBHOOK] Replay of completed session {session_id} acknowledged")
        return {"credited": False, "replay": True}

    with storage_guard("check payment ledger entry"):
        entry = await db.spendingHistory.find_one({"paymentSessionId": session_id}, {"_id": 1})

    if entry:
        await _mark_completed(session_id, db)
        logger.info(f"[WEBHOOK] Session {session_id} was credited earlier; marked completed")
        return {"credited": False, "replay": True}

    balance = await _credit_payment(existing, db)
    if balance is not None:
        logger.warning(f"[WEBHOOK] Recovered interrupted credit for session {session_id}")
    return {"credited": balance is not None, "replay": True}
