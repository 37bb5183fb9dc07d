"""
Token Balance API
Balance and ledger views for the signed-in (or impersonated) user
"""
import logging
from fastapi import APIRouter, HTTPException, Depends, Query
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.database.connection import get_database
from app.auth.impersonation import get_effective_user_id
from app.admin.accessor import get_user_spending_history
from app.credits.manager import TokenManager
from app.utils.serializers import to_object_id

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/user", tags=["Tokens"])


@router.get("/tokens")
async def get_user_tokens(
    user_id: str = Depends(get_effective_user_id),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """Current token balance"""
    if to_object_id(user_id) is None:
        raise HTTPException(status_code=400, detail="Invalid user session")

    result = await TokenManager.check_user_tokens(user_id, db)
    return {"tokens": result["tokenCount"], "hasTokens": result["hasTokens"]}


@router.get("/spending-history")
async def get_spending_history(
    user_id: str = Depends(get_effective_user_id),
    db: AsyncIOMotorDatabase = Depends(get_database),
    limit: int = Query(50, ge=1, le=50)
):
    """Most recent ledger entries, newest first"""
    history = await get_user_spending_history(user_id, db, limit=limit)
    return {"spendingHistory": history}
