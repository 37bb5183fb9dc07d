"""
Usage API Routes
Anonymous allowance lookups and the post-sign-in transfer
"""
import logging
from fastapi import APIRouter, HTTPException, Depends, Request
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.database.connection import get_database, storage_guard, StorageUnavailableError
from app.auth.jwt_handler import get_current_user_id
from app.credits.manager import TokenManager
from app.usage.anonymous import check_anonymous_limit
from app.usage.fingerprint import fingerprint_from_request, get_client_ip
from app.usage.transfer import (
    transfer_anonymous_transcriptions_to_user,
    transfer_anonymous_usage_to_user,
)
from app.utils.serializers import to_object_id
from config import ANONYMOUS_TRANSCRIPTION_LIMIT

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Usage"])


@router.get("/api/usage")
async def get_usage(
    request: Request,
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """Free-tier allowance for the calling fingerprint"""
    result = await check_anonymous_limit(
        fingerprint_from_request(request),
        get_client_ip(request),
        request.headers.get("user-agent"),
        db
    )

    return {**result, "limit": ANONYMOUS_TRANSCRIPTION_LIMIT}


def _transfer_message(tokens: int, transcriptions: int, parts: list) -> str:
    if tokens and transcriptions:
        return f"{' + '.join(parts)}! Total: {tokens} tokens and {transcriptions} transcriptions added to your account!"
    if tokens:
        return f"{' + '.join(parts)}! Total: {tokens} tokens added to your account!"
    if transcriptions:
        return f"{' + '.join(parts)}! {transcriptions} transcriptions added to your account!"
    return "No additional tokens or transcriptions to transfer"


@router.post("/api/auth/transfer-tokens")
async def transfer_tokens(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """
    Settle a fresh sign-in

    Grants the welcome tokens, converts the caller's leftover anonymous
    uses into tokens and adopts their anonymous transcriptions. Each step
    happens at most once per account.
    """
    oid = to_object_id(user_id)
    if oid is None:
        raise HTTPException(status_code=400, detail="Invalid user session")

    fingerprint = fingerprint_from_request(request)

    try:
        with storage_guard("load user for transfer"):
            user = await db.users.find_one({"_id": oid}, {"_id": 1})
        if not user:
            raise HTTPException(status_code=404, detail="User not found")

        parts = []

        welcome = await TokenManager.initialize_user_tokens(user_id, db)
        if welcome:
            parts.append(f"Welcome! {welcome} free tokens granted")

        usage = await transfer_anonymous_usage_to_user(fingerprint, user_id, db)
        if not usage.success:
            logger.warning(f"[TRANSFER] Usage transfer for {user_id} not applied: {usage.reason}")
            raise HTTPException(status_code=409, detail=usage.reason or "Transfer conflict")
        if usage.tokens_transferred:
            parts.append(f"{usage.tokens_transferred} tokens transferred from anonymous usage")

        transcriptions = await transfer_anonymous_transcriptions_to_user(fingerprint, user_id, db)
        moved = transcriptions["transcriptionsTransferred"]
        if moved:
            parts.append(f"{moved} transcriptions transferred from anonymous usage")

        if not transcriptions["success"]:
            logger.error(f"[TRANSFER] Transcription transfer failed for {user_id}: {transcriptions['reason']}")
            raise HTTPException(status_code=500, detail="Failed to process tokens")

        tokens = welcome + usage.tokens_transferred
        return {
            "success": True,
            "tokensTransferred": tokens,
            "transcriptionsTransferred": moved,
            "alreadyTransferred": usage.already_transferred,
            "message": _transfer_message(tokens, moved, parts)
        }

    except (HTTPException, StorageUnavailableError):
        raise
    except Exception as e:
        logger.error(f"Error in token transfer for {user_id}: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to process tokens")
