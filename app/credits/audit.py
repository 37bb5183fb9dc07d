"""
Token Security Audit
Scans the ledger and user flags for signs of duplicated free grants
"""
import logging
from typing import Dict, List

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.database.connection import storage_guard
from app.database.models import SpendingAction

logger = logging.getLogger(__name__)


async def _users_with_repeated_action(db: AsyncIOMotorDatabase, action: SpendingAction) -> List[str]:
    pipeline = [
        {"$match": {"action": action.value}},
        {"$group": {"_id": "$userId", "count": {"$sum": 1}}},
        {"$match": {"count": {"$gt": 1}}}
    ]
    rows = await db.spendingHistory.aggregate(pipeline).to_list(length=None)
    return [row["_id"] for row in rows]


async def audit_token_security(db: AsyncIOMotorDatabase) -> Dict:
    """
    Look for users holding more free tokens than the rules allow

    Checks:
        - more than one welcome grant per user
        - more than one anonymous transfer per user
        - one anonymous fingerprint credited to several users
        - transfer flag set without the fingerprint it came from

    Returns:
        {"suspiciousUsers": [...], "duplicateFingerprints": [...], "issues": [...]}
    """
    issues: List[str] = []
    suspicious: List[str] = []

    with storage_guard("token security audit"):
        repeated_grants = await _users_with_repeated_action(db, SpendingAction.FREE_TOKENS_GRANTED)
        repeated_transfers = await _users_with_repeated_action(db, SpendingAction.ANONYMOUS_TOKENS_TRANSFERRED)

        shared = await db.users.aggregate([
            {"$match": {"anonymousTransferFingerprint": {"$exists": True}}},
            {"$group": {"_id": "$anonymousTransferFingerprint", "count": {"$sum": 1}}},
            {"$match": {"count": {"$gt": 1}}}
        ]).to_list(length=None)

        inconsistent = await db.users.find(
            {"hasReceivedAnonymousTransfer": True, "anonymousTransferFingerprint": {"$exists": False}},
            {"_id": 1}
        ).to_list(length=None)

    if repeated_grants:
        issues.append(f"Found {len(repeated_grants)} users with multiple free token grants")
        suspicious.extend(repeated_grants)

    if repeated_transfers:
        issues.append(f"Found {len(repeated_transfers)} users with multiple anonymous transfers")
        suspicious.extend(repeated_transfers)

    duplicate_fingerprints = [row["_id"] for row in shared]
    if duplicate_fingerprints:
        issues.append(f"Found {len(duplicate_fingerprints)} fingerprints used by multiple users")

    if inconsistent:
        issues.append(f"Found {len(inconsistent)} users with inconsistent security flags")
        suspicious.extend(str(user["_id"]) for user in inconsistent)

    suspicious_users = list(dict.fromkeys(suspicious))

    if issues:
        for issue in issues:
            logger.warning(f"[AUDIT] {issue}")
    else:
        logger.info("[AUDIT] Token security audit found no issues")

    return {
        "suspiciousUsers": suspicious_users,
        "duplicateFingerprints": duplicate_fingerprints,
        "issues": issues
    }
