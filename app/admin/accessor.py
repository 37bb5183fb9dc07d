"""
Admin Read Projections
User, transcription, ledger and anonymous-usage views for the dashboard
"""
import logging
import math
import re
from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.admin.middleware import ADMIN_PROJECTION
from app.database.connection import storage_guard
from app.utils.serializers import serialize_document, serialize_documents, to_object_id

logger = logging.getLogger(__name__)

TRANSCRIPTION_FIELDS = ("_id", "title", "url", "status", "duration", "createdAt")
OVERSIGHT_FIELDS = (
    "_id", "title", "url", "status", "duration", "processingDuration", "error", "isPublic",
    "publicId", "thumbnail", "content", "notes", "prd", "createdAt", "updatedAt"
)
HISTORY_FIELDS = ("_id", "action", "tokensChanged", "description", "balanceAfter", "createdAt")
ANONYMOUS_FIELDS = (
    "_id", "fingerprint", "ip", "userAgent", "transcriptionCount", "isTransferUsed",
    "transferredToUserId", "transferredAt", "createdAt", "updatedAt"
)


def admin_user_view(user: Dict) -> Dict:
    """Serialized user with the admin flags defaulted"""
    view = serialize_document(user, ADMIN_PROJECTION.keys())
    view["tokens"] = user.get("tokens", 0)
    view["isAdmin"] = user.get("isAdmin", False)
    view["isActive"] = user.get("isActive", True)
    return view


async def get_all_users(db: AsyncIOMotorDatabase) -> List[Dict]:
    """All users, newest first"""
    with storage_guard("list users"):
        users = await db.users.find({}, ADMIN_PROJECTION)\
            .sort("createdAt", -1)\
            .to_list(length=None)

    return [admin_user_view(user) for user in users]


async def get_user_transcriptions(user_id: str, db: AsyncIOMotorDatabase) -> List[Dict]:
    with storage_guard("list user transcriptions"):
        transcriptions = await db.transcriptions.find({"userId": user_id})\
            .sort("createdAt", -1)\
            .to_list(length=None)

    return serialize_documents(transcriptions, TRANSCRIPTION_FIELDS)


async def get_user_spending_history(
    user_id: str,
    db: AsyncIOMotorDatabase,
    limit: int = 0
) -> List[Dict]:
    """Ledger entries for a user, newest first; limit 0 means all"""
    with storage_guard("list spending history"):
        cursor = db.spendingHistory.find({"userId": user_id}).sort("createdAt", -1)
        if limit:
            cursor = cursor.limit(limit)
        entries = await cursor.to_list(length=None)

    return serialize_documents(entries, HISTORY_FIELDS)


def summarize_user_activity(transcriptions: List[Dict], history: List[Dict]) -> Dict:
    """Counts and token totals shown on the user detail page"""
    return {
        "totalTranscriptions": len(transcriptions),
        "completedTranscriptions": sum(1 for t in transcriptions if t.get("status") == "completed"),
        "totalSpent": sum(-entry["tokensChanged"] for entry in history if entry.get("tokensChanged", 0) < 0),
        "totalEarned": sum(entry["tokensChanged"] for entry in history if entry.get("tokensChanged", 0) > 0),
    }


async def get_anonymous_users_page(
    db: AsyncIOMotorDatabase,
    page: int = 1,
    limit: int = 50
) -> Dict:
    """
    One page of anonymous usage records with collection-wide stats

    Returns:
        {"anonymousUsers", "pagination", "stats"}
    """
    skip = (page - 1) * limit

    with storage_guard("list anonymous users"):
        total = await db.anonymousUsers.count_documents({})

        records = await db.anonymousUsers.find({})\
            .sort("createdAt", -1)\
            .skip(skip)\
            .limit(limit)\
            .to_list(length=limit)

        stats = await db.anonymousUsers.aggregate([
            {
                "$group": {
                    "_id": None,
                    "totalUsers": {"$sum": 1},
                    "totalTranscriptions": {"$sum": "$transcriptionCount"},
                    "transferredUsers": {"$sum": {"$cond": [{"$eq": ["$isTransferUsed", True]}, 1, 0]}},
                    "activeUsers": {"$sum": {"$cond": [{"$ne": ["$isTransferUsed", True]}, 1, 0]}}
                }
            }
        ]).to_list(length=1)

    anonymous_users = serialize_documents(records, ANONYMOUS_FIELDS)
    for record in anonymous_users:
        record["isTransferUsed"] = record.get("isTransferUsed") or False

    if stats:
        summary = {key: value for key, value in stats[0].items() if key != "_id"}
    else:
        summary = {"totalUsers": 0, "totalTranscriptions": 0, "transferredUsers": 0, "activeUsers": 0}

    return {
        "anonymousUsers": anonymous_users,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit) if limit else 0
        },
        "stats": summary
    }


def _transcription_filter(
    status: Optional[str],
    user_id: Optional[str],
    user_fingerprint: Optional[str],
    has_content: Optional[bool],
    search: Optional[str]
) -> Dict:
    conditions = []
    if status:
        conditions.append({"status": status})
    if user_id:
        conditions.append({"userId": user_id})
    if user_fingerprint:
        conditions.append({"userFingerprint": user_fingerprint})

    if has_content is True:
        conditions.append({"content": {"$exists": True, "$nin": [None, ""]}})
    elif has_content is False:
        conditions.append({"$or": [{"content": {"$exists": False}}, {"content": None}, {"content": ""}]})

    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        conditions.append({"$or": [{"title": pattern}, {"content": pattern}]})

    if not conditions:
        return {}
    if len(conditions) == 1:
        return conditions[0]
    return {"$and": conditions}


async def _owner_info(transcriptions: List[Dict], db: AsyncIOMotorDatabase) -> Dict:
    """userInfo per transcription _id: registered, anonymous or unknown"""
    user_ids = {t["userId"] for t in transcriptions if t.get("userId")}
    fingerprints = {t["userFingerprint"] for t in transcriptions if t.get("userFingerprint")}
    oids = [oid for oid in (to_object_id(user_id) for user_id in user_ids) if oid is not None]

    users, anonymous = [], []
    with storage_guard("load transcription owners"):
        if oids:
            users = await db.users.find({"_id": {"$in": oids}}, {"name": 1, "email": 1})\
                .to_list(length=None)
        if fingerprints:
            anonymous = await db.anonymousUsers.find(
                {"fingerprint": {"$in": list(fingerprints)}},
                {"fingerprint": 1, "ip": 1}
            ).to_list(length=None)

    users_by_id = {str(user["_id"]): user for user in users}
    anonymous_by_fingerprint = {record["fingerprint"]: record for record in anonymous}

    info = {}
    for transcription in transcriptions:
        user = users_by_id.get(transcription.get("userId"))
        record = anonymous_by_fingerprint.get(transcription.get("userFingerprint"))
        if user:
            owner = {"type": "registered", "userId": str(user["_id"]), "name": user.get("name"), "email": user.get("email")}
        elif record:
            owner = {"type": "anonymous", "fingerprint": record["fingerprint"], "ip": record.get("ip")}
        else:
            owner = {"type": "unknown", "fingerprint": transcription.get("userFingerprint")}
        info[transcription["_id"]] = owner
    return info


async def get_all_transcriptions_page(
    db: AsyncIOMotorDatabase,
    page: int = 1,
    limit: int = 50,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    user_fingerprint: Optional[str] = None,
    has_content: Optional[bool] = None,
    search: Optional[str] = None
) -> Dict:
    """
    Filtered page of every transcription, with owner details and stats

    `search` is matched case-insensitively and literally against title and
    content. Stats and the owner breakdown cover the whole collection.

    Returns:
        {"transcriptions", "pagination", "stats", "userTypeBreakdown"}
    """
    query = _transcription_filter(status, user_id, user_fingerprint, has_content, search)
    skip = (page - 1) * limit

    with storage_guard("list transcriptions"):
        total = await db.transcriptions.count_documents(query)

        records = await db.transcriptions.find(query)\
            .sort("createdAt", -1)\
            .skip(skip)\
            .limit(limit)\
            .to_list(length=limit)

        stats = await db.transcriptions.aggregate([
            {
                "$group": {
                    "_id": None,
                    "total": {"$sum": 1},
                    "completed": {"$sum": {"$cond": [{"$eq": ["$status", "completed"]}, 1, 0]}},
                    "processing": {"$sum": {"$cond": [{"$eq": ["$status", "processing"]}, 1, 0]}},
                    "pending": {"$sum": {"$cond": [{"$eq": ["$status", "pending"]}, 1, 0]}},
                    "error": {"$sum": {"$cond": [{"$eq": ["$status", "error"]}, 1, 0]}},
                    "public": {"$sum": {"$cond": [{"$eq": ["$isPublic", True]}, 1, 0]}}
                }
            }
        ]).to_list(length=1)

        registered = await db.transcriptions.count_documents({"userId": {"$nin": [None, ""]}})
        anonymous = await db.transcriptions.count_documents({
            "userId": {"$in": [None, ""]},
            "userFingerprint": {"$nin": [None, ""]}
        })

    owners = await _owner_info(records, db)
    transcriptions = []
    for record in records:
        view = serialize_document(record, OVERSIGHT_FIELDS)
        view["userInfo"] = owners[record["_id"]]
        transcriptions.append(view)

    if stats:
        summary = {key: value for key, value in stats[0].items() if key != "_id"}
    else:
        summary = {"total": 0, "completed": 0, "processing": 0, "pending": 0, "error": 0, "public": 0}

    return {
        "transcriptions": transcriptions,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit) if limit else 0
        },
        "stats": summary,
        "userTypeBreakdown": {
            "registered": registered,
            "anonymous": anonymous,
            "unknown": summary["total"] - registered - anonymous
        }
    }
