"""
Token Ledger
Every token balance change goes through TokenManager so that each one
lands together with its spendingHistory entry
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from app.database.connection import storage_guard
from app.database.models import SpendingAction, SpendingHistoryEntry
from app.utils.serializers import to_object_id
from config import FREE_TOKENS_FOR_NEW_USERS, TOKEN_COSTS

logger = logging.getLogger(__name__)


class InvalidUserIdError(ValueError):
    """User id is not a valid ObjectId"""


class LedgerConflictError(RuntimeError):
    """Balance changed under a compare-and-set too many times"""


class UserNotFoundError(LookupError):
    """No user document matches the id"""


class TokenManager:
    """Atomic balance changes with an audit trail"""

    @staticmethod
    async def check_user_tokens(user_id: str, db: AsyncIOMotorDatabase) -> Dict:
        """Current balance, zero for malformed or unknown ids"""
        oid = to_object_id(user_id)
        if oid is None:
            return {"hasTokens": False, "tokenCount": 0}

        with storage_guard("check user tokens"):
            user = await db.users.find_one({"_id": oid}, {"tokens": 1})

        if not user:
            return {"hasTokens": False, "tokenCount": 0}

        tokens = user.get("tokens", 0)
        return {"hasTokens": tokens > 0, "tokenCount": tokens}

    @staticmethod
    async def apply_delta(
        user_id: str,
        delta: int,
        action: SpendingAction,
        description: str,
        db: AsyncIOMotorDatabase,
        guard: Optional[Dict] = None,
        set_fields: Optional[Dict] = None,
        add_to_set: Optional[Dict] = None,
        **history_fields
    ) -> Optional[int]:
        """
        Increment tokens by `delta` and append the matching history entry

        A balance change whose history entry cannot be written is rolled
        back before the error propagates.

        Args:
            user_id: User ObjectId as string
            delta: Signed token change
            action: Ledger action recorded on the history entry
            description: Human readable history description
            db: Database connection
            guard: Extra match conditions; the change only applies if they hold
            set_fields: Fields written in the same update as the increment
            add_to_set: Array members added in the same update as the increment
            history_fields: Optional SpendingHistoryEntry fields

        Returns:
            Balance after the change, or None if the user/guard did not match

        Raises:
            InvalidUserIdError: If user_id is malformed
            StorageUnavailableError: If MongoDB is unreachable
        """
        oid = to_object_id(user_id)
        if oid is None:
            raise InvalidUserIdError(f"Invalid user ID: {user_id}")

        now = datetime.utcnow()
        entry = SpendingHistoryEntry(
            userId=str(oid),
            action=action,
            tokensChanged=delta,
            description=description,
            balanceAfter=0,
            createdAt=now,
            **history_fields
        )

        query = {"_id": oid, **(guard or {})}
        update = {
            "$inc": {"tokens": delta},
            "$set": {**(set_fields or {}), "updatedAt": now},
        }
        if add_to_set:
            update["$addToSet"] = add_to_set

        with storage_guard("update token balance"):
            updated = await db.users.find_one_and_update(
                query,
                update,
                return_document=ReturnDocument.AFTER
            )

        if updated is None:
            return None

        balance = updated.get("tokens", 0)
        entry.balanceAfter = balance

        try:
            with storage_guard("record spending history"):
                await db.spendingHistory.insert_one(entry.to_document())
        except Exception:
            await TokenManager._rollback(oid, delta, set_fields, add_to_set, db)
            raise

        logger.info(f"[LEDGER] {SpendingAction(action).value} {delta:+d} for user {user_id}, balance {balance}")
        return balance

    @staticmethod
    async def _rollback(
        oid,
        delta: int,
        set_fields: Optional[Dict],
        add_to_set: Optional[Dict],
        db: AsyncIOMotorDatabase
    ) -> None:
        """Undo a balance change whose history entry was never written"""
        update = {"$inc": {"tokens": -delta}}
        if set_fields:
            update["$unset"] = {key: "" for key in set_fields}
        if add_to_set:
            update["$pull"] = add_to_set
        try:
            await db.users.update_one({"_id": oid}, update)
            logger.warning(f"[LEDGER] Rolled back {delta:+d} for user {oid}")
        except Exception as e:
            logger.critical(f"[LEDGER] Rollback failed for user {oid} ({delta:+d}): {str(e)}", exc_info=True)

    @staticmethod
    async def add_tokens_with_history(
        user_id: str,
        delta: int,
        action: SpendingAction,
        description: str,
        db: AsyncIOMotorDatabase,
        **history_fields
    ) -> int:
        """
        Credit or debit a user unconditionally

        Returns:
            Balance after the change

        Raises:
            UserNotFoundError: If the user does not exist
        """
        balance = await TokenManager.apply_delta(
            user_id, delta, action, description, db, **history_fields
        )
        if balance is None:
            raise UserNotFoundError(f"User not found: {user_id}")
        return balance

    @staticmethod
    async def set_tokens_with_history(
        user_id: str,
        target: int,
        db: AsyncIOMotorDatabase,
        max_attempts: int = 3
    ) -> Dict:
        """
        Move a balance to an absolute value (admin edit)

        The change is recorded as a grant or deduction of the difference.
        Compare-and-set on the observed balance keeps concurrent credits intact.

        Returns:
            {"previousTokens", "newTokens", "tokensChanged"}
        """
        oid = to_object_id(user_id)
        if oid is None:
            raise InvalidUserIdError(f"Invalid user ID: {user_id}")

        for _ in range(max_attempts):
            with storage_guard("read token balance"):
                user = await db.users.find_one({"_id": oid}, {"tokens": 1})
            if not user:
                raise UserNotFoundError(f"User not found: {user_id}")

            current = user.get("tokens", 0)
            difference = target - current
            if difference == 0:
                return {"previousTokens": current, "newTokens": current, "tokensChanged": 0}

            granted = difference > 0
            balance = await TokenManager.apply_delta(
                user_id,
                difference,
                SpendingAction.ADMIN_TOKEN_GRANT if granted else SpendingAction.ADMIN_TOKEN_DEDUCTION,
                f"Admin {'granted' if granted else 'deducted'} {abs(difference)} tokens",
                db,
                guard={"tokens": current}
            )
            if balance is not None:
                return {"previousTokens": current, "newTokens": balance, "tokensChanged": difference}

            logger.info(f"[LEDGER] Balance for {user_id} changed during admin edit, retrying")

        raise LedgerConflictError(f"Token balance for {user_id} kept changing during admin edit")

    @staticmethod
    async def consume_tokens_with_history(
        user_id: str,
        action: SpendingAction,
        db: AsyncIOMotorDatabase,
        transcription_id: Optional[str] = None,
        transcription_title: Optional[str] = None
    ) -> Dict:
        """
        Debit the cost of a usage action if the balance covers it

        Returns:
            {"success": bool, "remainingTokens": int}
        """
        action = SpendingAction(action)
        cost = TOKEN_COSTS.get(action.value, 1)
        subject = transcription_title or ("video" if action == SpendingAction.TRANSCRIPTION_CREATION else "transcription")
        labels = {
            SpendingAction.TRANSCRIPTION_CREATION: "Transcription creation",
            SpendingAction.NOTES_GENERATION: "Notes generation",
            SpendingAction.PRD_GENERATION: "PRD generation",
        }
        description = f'{labels.get(action, action.value)} for "{subject}"'

        extra = {}
        if transcription_id:
            extra["transcriptionId"] = transcription_id
        if transcription_title:
            extra["transcriptionTitle"] = transcription_title

        balance = await TokenManager.apply_delta(
            user_id,
            -cost,
            action,
            description,
            db,
            guard={"tokens": {"$gte": cost}},
            isFreeTier=False,
            **extra
        )

        if balance is None:
            current = await TokenManager.check_user_tokens(user_id, db)
            logger.warning(f"Insufficient tokens for user {user_id} ({action.value} costs {cost})")
            return {"success": False, "remainingTokens": current["tokenCount"]}

        return {"success": True, "remainingTokens": balance}

    @staticmethod
    async def initialize_user_tokens(user_id: str, db: AsyncIOMotorDatabase) -> int:
        """
        Grant the welcome tokens once per account

        Returns:
            Tokens granted (0 if already granted or the user is not eligible)
        """
        balance = await TokenManager.apply_delta(
            user_id,
            FREE_TOKENS_FOR_NEW_USERS,
            SpendingAction.FREE_TOKENS_GRANTED,
            f"Welcome! {FREE_TOKENS_FOR_NEW_USERS} free tokens granted",
            db,
            guard={"tokens": 0, "hasReceivedInitialFreeTokens": {"$ne": True}},
            set_fields={"hasReceivedInitialFreeTokens": True},
            isFreeTier=True
        )
        return FREE_TOKENS_FOR_NEW_USERS if balance is not None else 0
