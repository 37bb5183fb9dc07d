"""
Admin Dashboard API
User management, ledger corrections, anonymous usage oversight and impersonation
"""
import logging
from fastapi import APIRouter, HTTPException, Depends, Query, Response
from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional

from app.database.connection import get_database, storage_guard, StorageUnavailableError
from app.database.models import (
    AdminUserUpdate,
    ImpersonationRequest,
    PaymentFailureCompensation,
    SpendingAction,
    TranscriptionStatus,
)
from app.auth.jwt_handler import get_current_user_id
from app.auth.impersonation import IMPERSONATION_COOKIE, create_impersonation_token
from app.admin.middleware import require_admin, log_admin_action
from app.admin.accessor import (
    admin_user_view,
    get_all_transcriptions_page,
    get_all_users,
    get_anonymous_users_page,
    get_user_spending_history,
    get_user_transcriptions,
    summarize_user_activity,
)
from app.admin.analytics import get_daily_analytics
from app.credits.audit import audit_token_security
from app.credits.manager import LedgerConflictError, TokenManager, UserNotFoundError
from app.usage.anonymous import cleanup_transferred_anonymous_usage
from app.utils.serializers import to_object_id
from config import settings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["Admin Dashboard"])


def _require_object_id(user_id: str):
    oid = to_object_id(user_id)
    if oid is None:
        raise HTTPException(status_code=400, detail="Invalid user ID")
    return oid


@router.get("/users")
async def list_all_users(
    admin_id: str = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """List all users, newest first"""
    try:
        users = await get_all_users(db)
        return {"total": len(users), "users": users}

    except StorageUnavailableError:
        raise
    except Exception as e:
        logger.error(f"Error listing users: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to list users")


@router.get("/users/{user_id}")
async def get_user_details(
    user_id: str,
    admin_id: str = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """User profile with transcriptions, ledger and token totals"""
    oid = _require_object_id(user_id)

    try:
        with storage_guard("load user details"):
            user = await db.users.find_one({"_id": oid})

        if not user:
            raise HTTPException(status_code=404, detail="User not found")

        transcriptions = await get_user_transcriptions(user_id, db)
        spending_history = await get_user_spending_history(user_id, db)

        return {
            "user": admin_user_view(user),
            "transcriptions": transcriptions,
            "spendingHistory": spending_history,
            "stats": summarize_user_activity(transcriptions, spending_history)
        }

    except (HTTPException, StorageUnavailableError):
        raise
    except Exception as e:
        logger.error(f"Error getting user details: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to get user details")


@router.patch("/users/{user_id}")
async def update_user(
    user_id: str,
    update: AdminUserUpdate,
    admin_id: str = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """
    Edit tokens and account flags

    A token change is recorded in the ledger as a grant or deduction of
    the difference.
    """
    oid = _require_object_id(user_id)

    try:
        with storage_guard("load user for update"):
            user = await db.users.find_one({"_id": oid}, {"_id": 1})

        if not user:
            raise HTTPException(status_code=404, detail="User not found")

        flags = update.model_dump(include={"isActive", "isAdmin"}, exclude_none=True)
        updated_fields = []
        response = {"success": True, "message": "User updated successfully"}

        # Flags are written only once the token change has succeeded
        if update.tokens is not None:
            response["tokens"] = await TokenManager.set_tokens_with_history(user_id, update.tokens, db)
            updated_fields.append("tokens")

        if flags:
            with storage_guard("update user flags"):
                await db.users.update_one(
                    {"_id": oid},
                    {"$set": {**flags, "updatedAt": datetime.utcnow()}}
                )
            updated_fields.extend(flags)

        await log_admin_action(
            admin_id,
            "update_user",
            db,
            target_user_id=user_id,
            details=update.model_dump(exclude_none=True)
        )

        response["updatedFields"] = updated_fields
        return response

    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except LedgerConflictError as e:
        logger.warning(str(e))
        raise HTTPException(status_code=409, detail="Token balance changed concurrently, retry")
    except (HTTPException, StorageUnavailableError):
        raise
    except Exception as e:
        logger.error(f"Error updating user {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to update user")


@router.post("/payment-failure")
async def compensate_payment_failure(
    body: PaymentFailureCompensation,
    admin_id: str = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """Grant tokens for a payment that was charged but never credited"""
    oid = to_object_id(body.userId)
    if oid is None:
        raise HTTPException(status_code=400, detail="Valid user ID required")

    try:
        with storage_guard("load user for compensation"):
            user = await db.users.find_one({"_id": oid}, {"email": 1, "name": 1})

        if not user:
            raise HTTPException(status_code=404, detail="User not found")

        description = f"Payment failure compensation: {body.reason or 'Payment processing failed'}"
        if body.stripeSessionId:
            description += f" (Session: {body.stripeSessionId})"

        new_balance = await TokenManager.add_tokens_with_history(
            body.userId,
            body.tokensToGrant,
            SpendingAction.PAYMENT_FAILURE_COMPENSATION,
            description,
            db
        )

        await log_admin_action(
            admin_id,
            SpendingAction.PAYMENT_FAILURE_COMPENSATION.value,
            db,
            target_user_id=body.userId,
            details=body.model_dump(exclude_none=True)
        )

        return {
            "success": True,
            "message": f"Successfully granted {body.tokensToGrant} tokens to {user.get('email')}",
            "user": {
                "_id": body.userId,
                "email": user.get("email"),
                "name": user.get("name"),
                "previousTokens": new_balance - body.tokensToGrant,
                "newTokens": new_balance
            }
        }

    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except (HTTPException, StorageUnavailableError):
        raise
    except Exception as e:
        logger.error(f"Error handling payment failure for {body.userId}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to grant compensation")


@router.get("/anonymous-users")
async def list_anonymous_users(
    admin_id: str = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_database),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200)
):
    """Paginated anonymous usage records with aggregate stats"""
    return await get_anonymous_users_page(db, page=page, limit=limit)


@router.get("/transcriptions")
async def list_all_transcriptions(
    admin_id: str = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_database),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    status: Optional[TranscriptionStatus] = Query(None),
    userId: Optional[str] = Query(None),
    userFingerprint: Optional[str] = Query(None),
    hasContent: Optional[bool] = Query(None),
    search: Optional[str] = Query(None, max_length=200)
):
    """Every transcription, filtered and paginated, with owner details"""
    return await get_all_transcriptions_page(
        db,
        page=page,
        limit=limit,
        status=status.value if status else None,
        user_id=userId,
        user_fingerprint=userFingerprint,
        has_content=hasContent,
        search=search
    )


@router.post("/cleanup-anonymous")
async def cleanup_anonymous_users(
    admin_id: str = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """Run the anonymous usage repair and retention pass now"""
    result = await cleanup_transferred_anonymous_usage(db)
    await log_admin_action(admin_id, "cleanup_anonymous", db, details=result)
    return result


@router.get("/analytics")
async def get_analytics(
    admin_id: str = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_database),
    days: int = Query(30, ge=1, le=365)
):
    """Daily signups, anonymous visitors and transcriptions"""
    return await get_daily_analytics(db, days=days)


@router.get("/audit")
async def get_token_audit(
    admin_id: str = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """Token security audit findings"""
    return await audit_token_security(db)


@router.post("/impersonate")
async def start_impersonation(
    body: ImpersonationRequest,
    response: Response,
    admin_id: str = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_database)
):
    """
    Issue an impersonation token for `userId`

    The token is returned in the body and set as an httpOnly cookie; either
    may be presented on later requests alongside the admin's bearer token.
    """
    oid = _require_object_id(body.userId)

    with storage_guard("load user to impersonate"):
        target = await db.users.find_one({"_id": oid}, {"email": 1})

    if not target:
        raise HTTPException(status_code=404, detail="User not found")

    token = create_impersonation_token(admin_id, body.userId)
    response.set_cookie(
        IMPERSONATION_COOKIE,
        token,
        max_age=settings.IMPERSONATION_EXPIRE_MINUTES * 60,
        httponly=True,
        secure=not settings.DEBUG,
        samesite="lax"
    )

    await log_admin_action(admin_id, "impersonate_user", db, target_user_id=body.userId)
    logger.warning(f"[IMPERSONATION] Admin {admin_id} now acting as {body.userId}")

    return {
        "success": True,
        "message": f"Now impersonating {target.get('email')}",
        "impersonationToken": token,
        "impersonationData": {
            "originalAdminId": admin_id,
            "impersonatedUserId": body.userId,
            "impersonatedUserEmail": target.get("email"),
            "impersonatedAt": datetime.utcnow().isoformat()
        }
    }


@router.delete("/impersonate")
async def end_impersonation(
    response: Response,
    user_id: str = Depends(get_current_user_id)
):
    """Clear the impersonation cookie"""
    response.delete_cookie(IMPERSONATION_COOKIE, httponly=True, samesite="lax")
    logger.info(f"[IMPERSONATION] Ended for {user_id}")
    return {"success": True, "message": "Impersonation ended"}
