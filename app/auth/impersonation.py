"""
Admin Impersonation
Signed, short-lived tokens that let an admin act as another user
"""
from datetime import datetime, timedelta
from typing import Optional
import logging

from fastapi import Cookie, Depends, Header, HTTPException
from jose import jwt
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.admin.middleware import check_admin_permission
from app.auth.jwt_handler import get_current_user_id, verify_token
from app.database.connection import get_database
from config import settings

logger = logging.getLogger(__name__)

IMPERSONATION_COOKIE = "impersonation"


def create_impersonation_token(admin_id: str, user_id: str) -> str:
    """
    Issue a token binding `admin_id` to the impersonated `user_id`

    Lifetime is IMPERSONATION_EXPIRE_MINUTES (2 hours by default).
    """
    now = datetime.utcnow()
    payload = {
        "type": "impersonation",
        "originalAdminId": admin_id,
        "impersonatedUserId": user_id,
        "iat": now,
        "exp": now + timedelta(minutes=settings.IMPERSONATION_EXPIRE_MINUTES)
    }

    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


async def get_effective_user_id(
    user_id: str = Depends(get_current_user_id),
    x_impersonation_token: Optional[str] = Header(None),
    impersonation: Optional[str] = Cookie(None),
    db: AsyncIOMotorDatabase = Depends(get_database)
) -> str:
    """
    The user a request acts as

    Without an impersonation token this is the bearer user. With one, the
    token must be valid, issued to the bearer, and the bearer must still
    be an admin.
    """
    token = x_impersonation_token or impersonation
    if not token:
        return user_id

    payload = verify_token(token, token_type="impersonation")

    if payload.get("originalAdminId") != user_id:
        logger.warning(f"[IMPERSONATION] Token presented by {user_id} was issued to {payload.get('originalAdminId')}")
        raise HTTPException(status_code=403, detail="Impersonation token does not belong to this session")

    permission = await check_admin_permission(user_id, db)
    if not permission.is_admin:
        logger.warning(f"[IMPERSONATION] {user_id} is no longer an admin")
        raise HTTPException(status_code=403, detail="Admin access required")

    target = payload.get("impersonatedUserId")
    if not target:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    return target
