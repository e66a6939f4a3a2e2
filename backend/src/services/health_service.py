import asyncio
import logging
import os
import shutil
import time

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.tasks import pending_task_count
from src.services.scheduler import get_scheduler_health

logger = logging.getLogger(__name__)

APP_VERSION = os.environ.get("APP_VERSION", "dev")


async def check_database(db: AsyncSession) -> dict:
    """Check database connectivity and measure latency."""
    try:
        start = time.monotonic()
        await db.execute(text("SELECT 1"))
        latency_ms = round((time.monotonic() - start) * 1000)
        return {"status": "up", "latency_ms": latency_ms}
    except (SQLAlchemyError, OSError):
        logger.warning("Database health check failed", exc_info=True)
        return {"status": "down"}


def check_smtp() -> dict:
    if not settings.smtp_host or not settings.email_from_address:
        return {"status": "not_configured"}
    return {"status": "configured"}


async def check_storage() -> dict:
    """Check free space where invoice PDFs are written."""
    try:
        usage = await asyncio.to_thread(shutil.disk_usage, settings.storage_path)
    except OSError:
        return {"status": "error"}
    return {"status": "ok", "free_mb": usage.free // (1024 * 1024)}


async def get_health(db: AsyncSession) -> tuple[dict, int]:
    """Run all checks. Returns (response_body, status_code)."""
    database = await check_database(db)
    healthy = database["status"] == "up"
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "database": database["status"],
        "version": APP_VERSION,
        "checks": {
            "database": database,
            "smtp": check_smtp(),
            "storage": await check_storage(),
            "scheduler": get_scheduler_health(),
            "background_tasks": {"status": "ok", "pending": pending_task_count()},
        },
    }
    return body, 200 if healthy else 503
