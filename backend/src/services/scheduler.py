"""Background scheduler: one event loop for all periodic invoicing tasks.

Schedule:
  - Webhook retry sweep:  every ``webhook_sweep_interval_minutes``
  - Overdue check:        daily at ``overdue_check_hour`` UTC, then payment reminders
  - Audit partitions:     daily at 01:00 UTC
"""

import asyncio
import logging
import time
from datetime import datetime, timezone

from src.core.config import settings
from src.core.database import async_session_factory

logger = logging.getLogger(__name__)

_scheduler_task: asyncio.Task | None = None
_last_heartbeat: float = 0.0

PARTITION_CHECK_HOUR = 1  # UTC

# ── Dedup keys ───────────────────────────────────────────────────────────────

_last_run: dict[str, str] = {}


def _should_run(task_name: str, run_key: str) -> bool:
    """Return True if this task+key hasn't run yet, and mark it as run."""
    if _last_run.get(task_name) == run_key:
        return False
    _last_run[task_name] = run_key
    return True


# ── Task: Webhook retry sweep ────────────────────────────────────────────────

async def _run_webhook_sweep(now: datetime) -> None:
    interval = max(settings.webhook_sweep_interval_minutes, 1)
    minute_of_day = now.hour * 60 + now.minute
    if minute_of_day % interval != 0:
        return
    if not _should_run("webhook_sweep", now.strftime("%Y-%m-%dT%H:%M")):
        return

    from src.services.webhook_service import retry_failed_webhooks

    async with async_session_factory() as db:
        result = await retry_failed_webhooks(db)
    if result["retried"] or result["failed"]:
        logger.info(
            "Webhook sweep: %d delivered, %d still failing",
            result["retried"], result["failed"],
        )


# ── Task: Overdue invoices ───────────────────────────────────────────────────

async def _run_overdue_check(now: datetime) -> None:
    if now.hour != settings.overdue_check_hour:
        return
    if not _should_run("overdue", now.strftime("%Y-%m-%d")):
        return

    logger.info("Overdue invoice check triggered at %s", now.isoformat())
    from src.services.invoice_service import refresh_overdue_invoices, send_due_reminders

    async with async_session_factory() as db:
        count = await refresh_overdue_invoices(db, today=now.date())
        reminders = await send_due_reminders(db, now=now)
    if count:
        logger.info("Marked %d invoice(s) overdue", count)
    else:
        logger.debug("No overdue invoices")
    if reminders["sent"] or reminders["failed"]:
        logger.info(
            "Payment reminders: %d sent, %d failed", reminders["sent"], reminders["failed"]
        )


# ── Task: Audit partitions ───────────────────────────────────────────────────

async def _run_partition_maintenance(now: datetime) -> None:
    if now.hour != PARTITION_CHECK_HOUR:
        return
    if not _should_run("audit_partitions", now.strftime("%Y-%m-%d")):
        return

    from src.audit.service import ensure_audit_partitions

    async with async_session_factory() as db:
        await ensure_audit_partitions(db)


# ── Main Loop ────────────────────────────────────────────────────────────────

ALL_TASKS = [
    ("webhook_sweep", _run_webhook_sweep),
    ("overdue", _run_overdue_check),
    ("audit_partitions", _run_partition_maintenance),
]


async def _scheduler_loop() -> None:
    """Single event loop: checks every 60s which tasks are due."""
    global _last_heartbeat
    while True:
        await asyncio.sleep(60)
        _last_heartbeat = time.monotonic()
        now = datetime.now(timezone.utc)
        for task_name, task_fn in ALL_TASKS:
            try:
                await task_fn(now)
            except Exception:
                logger.exception("Scheduler task '%s' failed", task_name)


def start_scheduler() -> None:
    global _scheduler_task
    if _scheduler_task is None or _scheduler_task.done():
        _scheduler_task = asyncio.create_task(_scheduler_loop())
        logger.info(
            "Scheduler started: webhook sweep every %d min, overdue check at %02d:00 UTC",
            settings.webhook_sweep_interval_minutes, settings.overdue_check_hour,
        )


def get_scheduler_health() -> dict:
    """Return scheduler health based on heartbeat recency.

    The loop ticks every 60 seconds; a heartbeat older than 70 seconds
    means the scheduler may be stalled.
    """
    if _scheduler_task is None:
        return {"status": "not_started"}
    if _scheduler_task.done():
        return {"status": "stopped"}
    if _last_heartbeat == 0.0:
        return {"status": "starting"}
    elapsed = time.monotonic() - _last_heartbeat
    if elapsed > 70:
        return {"status": "stale", "last_heartbeat_secs_ago": round(elapsed)}
    return {"status": "healthy", "last_heartbeat_secs_ago": round(elapsed)}


def stop_scheduler() -> None:
    global _scheduler_task
    if _scheduler_task and not _scheduler_task.done():
        _scheduler_task.cancel()
        _scheduler_task = None
        logger.info("Scheduler stopped")
