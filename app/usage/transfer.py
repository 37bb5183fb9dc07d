"""
Anonymous To Account Transfer
Moves a fingerprint's leftover free uses and transcriptions to a signed-in user
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel
from pymongo import ReturnDocument

from app.credits.manager import InvalidUserIdError, TokenManager
from app.database.connection import StorageUnavailableError, storage_guard
from app.database.models import SpendingAction
from app.usage.anonymous import NOT_TRANSFERRED
from app.utils.serializers import to_object_id
from config import ANONYMOUS_TRANSCRIPTION_LIMIT

logger = logging.getLogger(__name__)


class TransferResult(BaseModel):
    """Outcome of a usage transfer"""
    success: bool
    tokens_transferred: int = 0
    already_transferred: bool = False
    reason: Optional[str] = None


async def _release_claim(fingerprint: str, pre_image: Dict, db: AsyncIOMotorDatabase) -> None:
    """Put a claimed anonymous record back the way it was"""
    await db.anonymousUsers.update_one(
        {"fingerprint": fingerprint},
        {
            "$set": {
                "isTransferUsed": pre_image.get("isTransferUsed", False),
                "transcriptionCount": pre_image.get("transcriptionCount", 0),
                "updatedAt": datetime.utcnow()
            },
            "$unset": {"transferredToUserId": "", "transferredAt": ""}
        }
    )


async def transfer_anonymous_usage_to_user(
    fingerprint: str,
    user_id: str,
    db: AsyncIOMotorDatabase
) -> TransferResult:
    """
    Convert the fingerprint's remaining free uses into tokens for `user_id`

    The anonymous record is claimed with a single conditional update, so
    only one caller can ever transfer it. Each user receives at most one
    anonymous transfer.

    Raises:
        InvalidUserIdError: If user_id is malformed
        StorageUnavailableError: If MongoDB is unreachable
    """
    oid = to_object_id(user_id)
    if oid is None:
        raise InvalidUserIdError(f"Invalid user ID: {user_id}")

    with storage_guard("load user for transfer"):
        user = await db.users.find_one({"_id": oid}, {"hasReceivedAnonymousTransfer": 1})

    if not user:
        return TransferResult(success=False, reason="User not found")

    if user.get("hasReceivedAnonymousTransfer"):
        return TransferResult(
            success=True,
            already_transferred=True,
            reason="Already received anonymous transfer"
        )

    now = datetime.utcnow()
    with storage_guard("claim anonymous usage"):
        claimed = await db.anonymousUsers.find_one_and_update(
            {"fingerprint": fingerprint, **NOT_TRANSFERRED},
            {
                "$set": {
                    "isTransferUsed": True,
                    "transferredToUserId": user_id,
                    "transferredAt": now,
                    "transcriptionCount": ANONYMOUS_TRANSCRIPTION_LIMIT,
                    "updatedAt": now
                }
            },
            return_document=ReturnDocument.BEFORE
        )

    if claimed is None:
        with storage_guard("load anonymous usage"):
            exists = await db.anonymousUsers.find_one({"fingerprint": fingerprint}, {"_id": 1})
        if exists:
            logger.info(f"[TRANSFER] Fingerprint {fingerprint} already transferred")
            return TransferResult(
                success=True,
                already_transferred=True,
                reason="Anonymous usage already transferred"
            )
        return TransferResult(success=True, reason="No anonymous usage found")

    remaining = max(0, ANONYMOUS_TRANSCRIPTION_LIMIT - claimed.get("transcriptionCount", 0))
    if remaining == 0:
        logger.info(f"[TRANSFER] Fingerprint {fingerprint} had no free uses left for user {user_id}")
        return TransferResult(success=True, reason="No remaining usage to transfer")

    try:
        balance = await TokenManager.apply_delta(
            user_id,
            remaining,
            SpendingAction.ANONYMOUS_TOKENS_TRANSFERRED,
            f"Free tokens transferred from anonymous usage ({remaining} remaining transcriptions converted to tokens)",
            db,
            guard={"hasReceivedAnonymousTransfer": {"$ne": True}},
            set_fields={
                "hasReceivedAnonymousTransfer": True,
                "anonymousTransferFingerprint": fingerprint
            },
            isFreeTier=True
        )
    except StorageUnavailableError:
        await _release_claim(fingerprint, claimed, db)
        raise

    if balance is None:
        await _release_claim(fingerprint, claimed, db)
        logger.warning(f"[TRANSFER] User {user_id} received a transfer concurrently; claim on {fingerprint} released")
        return TransferResult(success=False, reason="Race condition detected")

    logger.info(f"[TRANSFER] {remaining} tokens moved from {fingerprint} to user {user_id}")
    return TransferResult(success=True, tokens_transferred=remaining)


async def transfer_anonymous_transcriptions_to_user(
    fingerprint: str,
    user_id: str,
    db: AsyncIOMotorDatabase
) -> Dict:
    """
    Reassign the fingerprint's ownerless transcriptions to `user_id`

    Returns:
        {"success": bool, "transcriptionsTransferred": int, "reason": str}
    """
    oid = to_object_id(user_id)
    if oid is None:
        raise InvalidUserIdError(f"Invalid user ID: {user_id}")

    with storage_guard("load user for transcription transfer"):
        user = await db.users.find_one({"_id": oid}, {"anonymousTranscriptionFingerprint": 1})

    if not user:
        return {"success": False, "transcriptionsTransferred": 0, "reason": "User not found"}

    if user.get("anonymousTranscriptionFingerprint") == fingerprint:
        return {
            "success": True,
            "transcriptionsTransferred": 0,
            "reason": "Already received transcriptions from this fingerprint"
        }

    now = datetime.utcnow()
    with storage_guard("transfer transcriptions"):
        result = await db.transcriptions.update_many(
            {"userFingerprint": fingerprint, "userId": {"$exists": False}},
            {
                "$set": {"userId": user_id, "updatedAt": now},
                "$unset": {"userFingerprint": ""}
            }
        )

    if result.modified_count == 0:
        return {"success": True, "transcriptionsTransferred": 0, "reason": "No anonymous transcriptions found"}

    with storage_guard("mark transcription transfer"):
        await db.users.update_one(
            {"_id": oid},
            {
                "$set": {
                    "hasReceivedAnonymousTranscriptions": True,
                    "anonymousTranscriptionFingerprint": fingerprint,
                    "updatedAt": now
                }
            }
        )

    logger.info(f"[TRANSFER] {result.modified_count} transcriptions moved from {fingerprint} to user {user_id}")
    return {
        "success": True,
        "transcriptionsTransferred": result.modified_count,
        "reason": f"Transferred {result.modified_count} transcriptions from anonymous usage"
    }
