"""
FastAPI Application Entry Point
Transcriber Backend: token accounting, anonymous usage, Stripe credits and admin
"""
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import sys
import os

from config import settings, validate_settings
from app.database.connection import (
    connect_to_mongo,
    close_mongo_connection,
    check_database_health,
    StorageUnavailableError,
)
from app.scheduler.tasks import start_scheduler, shutdown_scheduler

from app.usage.routes import router as usage_router
from app.credits.routes import router as tokens_router
from app.payments.routes import router as payments_router
from app.admin.routes import router as admin_router


def setup_logging():
    """Configure logging to console and app.log"""
    if sys.platform == "win32":
        if hasattr(sys.stdout, 'reconfigure'):
            sys.stdout.reconfigure(encoding='utf-8')
        if hasattr(sys.stderr, 'reconfigure'):
            sys.stderr.reconfigure(encoding='utf-8')

    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler('app.log', encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    return logging.getLogger(__name__)


logger = setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("=" * 60)
    logger.info("Starting Transcriber Backend...")
    logger.info("=" * 60)

    validate_settings()

    try:
        logger.info("[INFO] Connecting to MongoDB...")
        await connect_to_mongo()
        logger.info("[OK] MongoDB connected successfully")
    except StorageUnavailableError as e:
        logger.critical(f"[FAIL] MongoDB connection failed: {str(e)}")
        logger.warning("[WARNING] App starting in degraded mode - database unavailable")

    try:
        start_scheduler()
    except Exception as e:
        logger.error(f"[WARN] Scheduler start failed: {str(e)}")

    logger.info("Application startup complete!")

    yield

    logger.info("Shutting down application...")
    shutdown_scheduler()
    await close_mongo_connection()
    logger.info("[OK] Cleanup complete")


app = FastAPI(
    title="Transcriber API",
    description="Token economy, anonymous usage and admin backend for the transcriber",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed input is a 400"""
    logger.info(f"Validation failed on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request", "errors": jsonable_errors(exc)}
    )


@app.exception_handler(StorageUnavailableError)
async def storage_exception_handler(request: Request, exc: StorageUnavailableError):
    """MongoDB unreachable"""
    logger.error(f"Storage unavailable on {request.url.path}: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage temporarily unavailable"}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "error": str(exc) if settings.DEBUG else "An error occurred"
        }
    )


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    db_health = await check_database_health()

    return {
        "status": "healthy" if db_health.get("status") == "healthy" else "unhealthy",
        "service": "transcriber-api",
        "version": "1.0.0",
        "database": db_health
    }


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Transcriber API v1.0",
        "status": "operational",
        "docs": f"{settings.API_URL}/docs",
        "health": f"{settings.API_URL}/health"
    }


app.include_router(usage_router)
app.include_router(tokens_router)
app.include_router(payments_router)
app.include_router(admin_router)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))

    logger.info(f"Starting Uvicorn Server (debug={settings.DEBUG}, API URL {settings.API_URL})")

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=settings.DEBUG,
        log_level="info"
    )
