"""
Anonymous Usage Ledger
Free-tier allowance per request fingerprint, plus the retention cleanup
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.database.connection import storage_guard
from app.database.models import AnonymousUserModel
from config import ANONYMOUS_TRANSCRIPTION_LIMIT, settings

logger = logging.getLogger(__name__)

# Matches records that can still be consumed or transferred
NOT_TRANSFERRED = {
    "isTransferUsed": {"$ne": True},
    "transferredToUserId": {"$exists": False},
}


def remaining_uses(record: Dict) -> int:
    """Free uses left on an anonymous record"""
    if record.get("isTransferUsed") or record.get("transferredToUserId"):
        return 0
    return max(0, ANONYMOUS_TRANSCRIPTION_LIMIT - record.get("transcriptionCount", 0))


async def check_anonymous_limit(
    fingerprint: str,
    ip: Optional[str],
    user_agent: Optional[str],
    db: AsyncIOMotorDatabase
) -> Dict:
    """
    Report the free-tier allowance for a fingerprint

    The record is created on first sight; the count is never touched here.

    Returns:
        {"canUse": bool, "remainingUses": int}
    """
    defaults = AnonymousUserModel(
        fingerprint=fingerprint,
        ip=ip or "unknown",
        userAgent=user_agent or "unknown"
    ).model_dump(exclude={"fingerprint"}, exclude_none=True)

    try:
        with storage_guard("load anonymous usage"):
            record = await db.anonymousUsers.find_one_and_update(
                {"fingerprint": fingerprint},
                {"$setOnInsert": defaults},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
    except DuplicateKeyError:
        # Lost a concurrent upsert race; the winner's record is there now
        with storage_guard("load anonymous usage"):
            record = await db.anonymousUsers.find_one({"fingerprint": fingerprint})

    remaining = remaining_uses(record or {})
    return {"canUse": remaining > 0, "remainingUses": remaining}


async def increment_anonymous_usage(fingerprint: str, db: AsyncIOMotorDatabase) -> bool:
    """
    Consume one free use

    Returns:
        False if the record is missing or already transferred
    """
    with storage_guard("increment anonymous usage"):
        result = await db.anonymousUsers.update_one(
            {"fingerprint": fingerprint, **NOT_TRANSFERRED},
            {
                "$inc": {"transcriptionCount": 1},
                "$set": {"updatedAt": datetime.utcnow()}
            }
        )

    return result.modified_count > 0


async def cleanup_transferred_anonymous_usage(
    db: AsyncIOMotorDatabase,
    retention_days: Optional[int] = None
) -> Dict:
    """
    Repair half-transferred records and purge old transferred ones

    Safe to run repeatedly; a second run finds nothing to do.

    Returns:
        {"success": True, "cleaned": int}
    """
    retention_days = settings.ANONYMOUS_RETENTION_DAYS if retention_days is None else retention_days
    now = datetime.utcnow()

    with storage_guard("repair transferred anonymous usage"):
        repaired = await db.anonymousUsers.update_many(
            {
                "transferredToUserId": {"$exists": True},
                "$or": [
                    {"isTransferUsed": {"$ne": True}},
                    {"transcriptionCount": {"$lt": ANONYMOUS_TRANSCRIPTION_LIMIT}}
                ]
            },
            {
                "$set": {
                    "isTransferUsed": True,
                    "transcriptionCount": ANONYMOUS_TRANSCRIPTION_LIMIT,
                    "updatedAt": now
                }
            }
        )

    with storage_guard("purge transferred anonymous usage"):
        purged = await db.anonymousUsers.delete_many({
            "isTransferUsed": True,
            "transferredAt": {"$lt": now - timedelta(days=retention_days)}
        })

    cleaned = repaired.modified_count + purged.deleted_count
    logger.info(
        f"[CLEANUP] Anonymous usage: repaired {repaired.modified_count}, "
        f"purged {purged.deleted_count} older than {retention_days} days"
    )

    return {"success": True, "cleaned": cleaned}
