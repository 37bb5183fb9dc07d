"""
Background Scheduler
Daily anonymous-usage cleanup and token security audit
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
import logging

from app.database.connection import get_database
from app.usage.anonymous import cleanup_transferred_anonymous_usage
from app.credits.audit import audit_token_security

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


def start_scheduler():
    """Start background job scheduler"""

    scheduler.add_job(
        cleanup_anonymous_usage_task,
        'cron',
        hour=2,
        minute=0,
        id='cleanup_anonymous_usage',
        name='Repair and purge transferred anonymous usage',
        replace_existing=True,
        max_instances=1
    )

    scheduler.add_job(
        token_security_audit_task,
        'cron',
        hour=3,
        minute=0,
        id='token_security_audit',
        name='Audit free token grants',
        replace_existing=True,
        max_instances=1
    )

    scheduler.start()
    logger.info("[OK] Scheduler started with cleanup and audit jobs")


def shutdown_scheduler():
    """Stop scheduler gracefully"""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("[OK] Scheduler stopped")


async def cleanup_anonymous_usage_task():
    """Daily anonymous usage cleanup"""
    try:
        db = await get_database()
        result = await cleanup_transferred_anonymous_usage(db)
        logger.info(f"[CLEANUP] Completed: {result['cleaned']} anonymous records cleaned")
    except Exception as e:
        logger.error(f"[CLEANUP] Job failed: {str(e)}", exc_info=True)


async def token_security_audit_task():
    """Daily token security audit; findings are logged"""
    try:
        db = await get_database()
        report = await audit_token_security(db)
        if report["issues"]:
            logger.warning(
                f"[AUDIT] {len(report['issues'])} issues, "
                f"{len(report['suspiciousUsers'])} suspicious users, "
                f"{len(report['duplicateFingerprints'])} shared fingerprints"
            )
    except Exception as e:
        logger.error(f"[AUDIT] Job failed: {str(e)}", exc_info=True)
