"""
Admin Authorization Middleware
Verify user is admin before allowing access
"""
from fastapi import HTTPException, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel
from datetime import datetime
from typing import Dict, Optional
import logging

from app.database.connection import get_database, storage_guard
from app.auth.jwt_handler import get_current_user_id
from app.utils.serializers import serialize_document, to_object_id

logger = logging.getLogger(__name__)

ADMIN_PROJECTION = {
    "_id": 1,
    "email": 1,
    "name": 1,
    "tokens": 1,
    "isAdmin": 1,
    "isActive": 1,
    "createdAt": 1,
    "updatedAt": 1
}


class AdminPermission(BaseModel):
    """Result of an admin check; `error` explains a refusal"""
    is_admin: bool
    user: Optional[Dict] = None
    error: Optional[str] = None


async def check_admin_permission(
    user_id: Optional[str],
    db: AsyncIOMotorDatabase
) -> AdminPermission:
    """
    Decide whether `user_id` belongs to an admin

    Never raises for bad input; a missing, malformed or unknown id is
    simply not an admin.
    """
    if not user_id:
        return AdminPermission(is_admin=False, error="Authentication required")

    oid = to_object_id(user_id)
    if oid is None:
        return AdminPermission(is_admin=False, error="Invalid user ID")

    with storage_guard("check admin permission"):
        user = await db.users.find_one({"_id": oid}, ADMIN_PROJECTION)

    if not user:
        return AdminPermission(is_admin=False, error="User not found")

    if user.get("isAdmin") is not True:
        return AdminPermission(is_admin=False, error="Admin access required")

    user.setdefault("isActive", True)
    return AdminPermission(is_admin=True, user=serialize_document(user))


async def require_admin(
    user_id: str = Depends(get_current_user_id),
    db: AsyncIOMotorDatabase = Depends(get_database)
) -> str:
    """
    Verify user is admin
    Returns user_id if admin; 401 without a session, 403 otherwise
    """
    permission = await check_admin_permission(user_id, db)

    if not permission.is_admin:
        logger.warning(f"[ADMIN] Access denied for {user_id}: {permission.error}")
        raise HTTPException(status_code=403, detail=permission.error or "Admin access required")

    return user_id


async def log_admin_action(
    admin_id: str,
    action: str,
    db: AsyncIOMotorDatabase,
    target_user_id: Optional[str] = None,
    details: Optional[dict] = None
) -> bool:
    """
    Log an admin action for audit trail

    Args:
        admin_id: Admin user ID
        action: Action type (e.g. 'update_user', 'payment_failure_compensation')
        db: Database connection
        target_user_id: User the action applied to
        details: Additional details about the action

    Returns:
        True if logged successfully
    """
    action_record = {
        "adminId": admin_id,
        "action": action,
        "targetUserId": target_user_id,
        "details": details or {},
        "createdAt": datetime.utcnow()
    }

    try:
        with storage_guard("log admin action"):
            await db.adminActions.insert_one(action_record)
    except Exception as e:
        logger.error(f"Error logging admin action {action} by {admin_id}: {str(e)}")
        return False

    logger.info(f"Admin action logged: {action} by {admin_id}")
    return True
