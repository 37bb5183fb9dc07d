"""
MongoDB Connection Manager
Async MongoDB connection using Motor, with retries, index setup and health checks
"""
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import (
    ConnectionFailure,
    ExecutionTimeout,
    DuplicateKeyError,
    OperationFailure,
)
import logging
from typing import Optional
import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta

from config import settings

logger = logging.getLogger(__name__)

# Covers AutoReconnect, NetworkTimeout and ServerSelectionTimeoutError
STORAGE_ERRORS = (ConnectionFailure, ExecutionTimeout)


class StorageUnavailableError(RuntimeError):
    """MongoDB could not be reached within the configured timeouts"""


@contextmanager
def storage_guard(operation: str):
    """
    Translate driver connectivity errors into StorageUnavailableError

    Usage:
        with storage_guard("credit tokens"):
            await db.users.find_one_and_update(...)
    """
    try:
        yield
    except STORAGE_ERRORS as e:
        logger.error(f"[STORAGE] {operation} failed: {str(e)}")
        raise StorageUnavailableError(f"Storage unavailable during {operation}") from e


class MongoDBManager:
    """Singleton MongoDB connection manager with health monitoring"""

    _instance: Optional['MongoDBManager'] = None
    _lock = asyncio.Lock()

    def __init__(self):
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self._is_connected: bool = False
        self._connection_attempts: int = 0
        self._last_health_check: Optional[datetime] = None
        self._health_check_interval: int = 30  # seconds

    @classmethod
    async def get_instance(cls) -> 'MongoDBManager':
        """Get or create singleton instance"""
        if cls._instance is None:
            async with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @property
    def is_connected(self) -> bool:
        """Check if database is connected"""
        return self._is_connected and self.client is not None

    async def connect(self, retries: int = 3, retry_delay: int = 2) -> None:
        """
        Establish connection to MongoDB with exponential backoff

        Args:
            retries: Number of connection attempts
            retry_delay: Base delay between retries in seconds

        Raises:
            StorageUnavailableError: If all connection attempts fail
        """
        if self.is_connected:
            logger.info("[OK] MongoDB already connected")
            return

        last_error: Optional[Exception] = None

        for attempt in range(1, retries + 1):
            try:
                logger.info(f"[ATTEMPT {attempt}/{retries}] MongoDB connection...")

                self.client = AsyncIOMotorClient(
                    settings.MONGODB_URI,
                    serverSelectionTimeoutMS=10000,
                    connectTimeoutMS=15000,
                    socketTimeoutMS=20000,
                    maxPoolSize=50,
                    retryWrites=True,
                    retryReads=True,
                    appname="TranscriberBackend"
                )

                await asyncio.wait_for(
                    self.client.admin.command('ping'),
                    timeout=10.0
                )

                self.database = self.client[settings.DATABASE_NAME]

                await create_indexes(self.database)

                self._is_connected = True
                self._connection_attempts = 0
                self._last_health_check = datetime.utcnow()

                logger.info(f"[OK] MongoDB connected to '{settings.DATABASE_NAME}'")
                return

            except (ConnectionFailure, asyncio.TimeoutError) as e:
                last_error = e
                self._connection_attempts += 1
                logger.error(f"[FAIL] Connection attempt {attempt} failed: {str(e)}")

                if attempt < retries:
                    wait_time = retry_delay * (2 ** (attempt - 1))
                    logger.info(f"[RETRY] Waiting {wait_time}s before retry...")
                    await asyncio.sleep(wait_time)

        self._is_connected = False
        error_msg = f"Failed to connect to MongoDB after {retries} attempts"
        logger.critical(error_msg)
        raise StorageUnavailableError(f"{error_msg}: {last_error}")

    async def disconnect(self) -> None:
        """Gracefully close MongoDB connection"""
        if self.client:
            self.client.close()
            self._is_connected = False
            self.client = None
            self.database = None
            logger.info("MongoDB connection closed gracefully")

    async def get_database(self) -> AsyncIOMotorDatabase:
        """
        Get MongoDB database instance with periodic health check

        Raises:
            StorageUnavailableError: If database not initialized
        """
        if not self.is_connected or self.database is None:
            raise StorageUnavailableError("Database not initialized. Call connect() first.")

        await self._periodic_health_check()

        return self.database

    async def _periodic_health_check(self) -> None:
        """Ping the server if the last check is older than the interval"""
        if self._last_health_check is None:
            return

        time_since_check = datetime.utcnow() - self._last_health_check

        if time_since_check > timedelta(seconds=self._health_check_interval):
            try:
                await asyncio.wait_for(
                    self.client.admin.command('ping'),
                    timeout=3.0
                )
                self._last_health_check = datetime.utcnow()
            except (ConnectionFailure, asyncio.TimeoutError) as e:
                logger.warning(f"Health check failed: {str(e)}")
                self._is_connected = False
                raise StorageUnavailableError("Database ping failed") from e

    async def health_check(self) -> dict:
        """
        Database health check with collection counts

        Returns:
            Health status dictionary
        """
        if not self.is_connected:
            return {
                "status": "disconnected",
                "error": "Database not connected"
            }

        try:
            await asyncio.wait_for(
                self.client.admin.command('ping'),
                timeout=3.0
            )

            db = self.database
            counts = await asyncio.gather(
                db.users.count_documents({}),
                db.anonymousUsers.count_documents({}),
                db.payments.count_documents({}),
                return_exceptions=True
            )

            return {
                "status": "healthy",
                "database": settings.DATABASE_NAME,
                "last_health_check": self._last_health_check.isoformat() if self._last_health_check else None,
                "collections": {
                    "users": counts[0] if not isinstance(counts[0], Exception) else "error",
                    "anonymousUsers": counts[1] if not isinstance(counts[1], Exception) else "error",
                    "payments": counts[2] if not isinstance(counts[2], Exception) else "error"
                }
            }

        except asyncio.TimeoutError:
            logger.error("Health check timeout")
            return {
                "status": "unhealthy",
                "error": "Database ping timeout"
            }

        except STORAGE_ERRORS as e:
            logger.error(f"Health check failed: {str(e)}")
            return {
                "status": "unhealthy",
                "error": str(e)
            }


async def create_indexes(db: AsyncIOMotorDatabase) -> None:
    """
    Create the indexes the ledger relies on

    The unique indexes on payments.stripeSessionId and
    anonymousUsers.fingerprint carry the exactly-once guarantees.

    Raises:
        OperationFailure: If a critical unique index cannot be created
    """
    critical_indexes_failed = False

    try:
        await db.users.create_index("email", unique=True, sparse=True)
        await db.users.create_index([("createdAt", DESCENDING)])
    except DuplicateKeyError:
        logger.warning("[WARN] Duplicate email found during user index creation")
        critical_indexes_failed = True

    try:
        await db.anonymousUsers.create_index("fingerprint", unique=True)
        await db.anonymousUsers.create_index([("isTransferUsed", ASCENDING), ("transferredAt", ASCENDING)])
    except DuplicateKeyError:
        logger.warning("[WARN] Duplicate fingerprint found during anonymousUsers index creation")
        critical_indexes_failed = True

    try:
        await db.payments.create_index("stripeSessionId", unique=True)
        await db.payments.create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    except DuplicateKeyError:
        logger.warning("[WARN] Duplicate payment session found during payments index creation")
        critical_indexes_failed = True

    await db.spendingHistory.create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    await db.spendingHistory.create_index("paymentSessionId", sparse=True)
    await db.transcriptions.create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    await db.transcriptions.create_index("userFingerprint", sparse=True)

    if critical_indexes_failed:
        raise OperationFailure("Critical unique indexes failed to create")

    logger.info("[OK] Database indexes created/verified successfully")


_manager: Optional[MongoDBManager] = None


async def connect_to_mongo(retries: int = 3) -> None:
    """Connect to MongoDB"""
    global _manager
    if _manager is None:
        _manager = await MongoDBManager.get_instance()

    if not _manager.is_connected:
        await _manager.connect(retries=retries)


async def close_mongo_connection() -> None:
    """Close MongoDB connection"""
    global _manager
    if _manager:
        await _manager.disconnect()


async def get_database() -> AsyncIOMotorDatabase:
    """FastAPI dependency returning the connected database"""
    global _manager

    if _manager is None:
        _manager = await MongoDBManager.get_instance()

    if not _manager.is_connected:
        logger.warning("[WARN] Database not connected, attempting connection...")
        await _manager.connect(retries=3)

    return await _manager.get_database()


async def check_database_health() -> dict:
    """Check database health"""
    global _manager

    if _manager is None:
        _manager = await MongoDBManager.get_instance()

    if not _manager.is_connected:
        try:
            await _manager.connect(retries=1)
        except StorageUnavailableError as e:
            logger.error(f"[FAIL] Database health check failed: {str(e)}")
            return {
                "status": "not_initialized",
                "error": "Database not connected",
                "details": str(e)
            }

    return await _manager.health_check()
