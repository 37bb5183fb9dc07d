"""
Admin Analytics and Data Aggregation
Daily signups, anonymous visitors and transcriptions for the dashboard chart
"""
from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime, timedelta
from typing import Dict, List, Any
import logging

from app.database.connection import storage_guard

logger = logging.getLogger(__name__)


async def count_by_day(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    start: datetime,
    end: datetime
) -> Dict[str, int]:
    """
    Count documents created per day

    Args:
        db: Database connection
        collection_name: Name of collection to analyze
        start: Inclusive lower bound on createdAt
        end: Inclusive upper bound on createdAt

    Returns:
        {"YYYY-MM-DD": count}
    """
    pipeline = [
        {"$match": {"createdAt": {"$gte": start, "$lte": end}}},
        {
            "$group": {
                "_id": {"$dateToString": {"format": "%Y-%m-%d", "date": "$createdAt"}},
                "count": {"$sum": 1}
            }
        }
    ]

    with storage_guard(f"aggregate {collection_name} by day"):
        rows = await db[collection_name].aggregate(pipeline).to_list(length=None)

    return {row["_id"]: row["count"] for row in rows}


async def get_daily_analytics(db: AsyncIOMotorDatabase, days: int = 30) -> Dict[str, Any]:
    """
    Per-day activity over the last `days` days (today included) plus overall totals

    Returns:
        {"dailyStats": [...], "summary": {...}}
    """
    now = datetime.utcnow()
    end = now.replace(hour=23, minute=59, second=59, microsecond=999000)
    start = (now - timedelta(days=days - 1)).replace(hour=0, minute=0, second=0, microsecond=0)

    signups = await count_by_day(db, "users", start, end)
    anonymous = await count_by_day(db, "anonymousUsers", start, end)
    transcriptions = await count_by_day(db, "transcriptions", start, end)

    daily_stats: List[Dict[str, Any]] = []
    for offset in range(days):
        day = start + timedelta(days=offset)
        key = day.strftime("%Y-%m-%d")
        new_users = signups.get(key, 0)
        new_anonymous = anonymous.get(key, 0)
        daily_stats.append({
            "date": key,
            "timestamp": day.isoformat(),
            "newUsers": new_users,
            "newAnonymousUsers": new_anonymous,
            "totalVisitors": new_users + new_anonymous,
            "transcriptions": transcriptions.get(key, 0)
        })

    with storage_guard("count totals"):
        total_users = await db.users.count_documents({})
        total_anonymous = await db.anonymousUsers.count_documents({})
        total_transcriptions = await db.transcriptions.count_documents({})

    summary = {
        "totalNewUsers": sum(day["newUsers"] for day in daily_stats),
        "totalNewAnonymousUsers": sum(day["newAnonymousUsers"] for day in daily_stats),
        "totalVisitors": sum(day["totalVisitors"] for day in daily_stats),
        "totalTranscriptions": sum(day["transcriptions"] for day in daily_stats),
        "totalUsers": total_users,
        "totalAnonymousUsers": total_anonymous,
        "totalAllTranscriptions": total_transcriptions
    }

    logger.debug(f"Analytics computed for {days} days")
    return {"dailyStats": daily_stats, "summary": summary}
