import logging
import re
from datetime import datetime, timezone
from uuid import UUID

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.middleware.request_id import request_id_var
from src.audit.models import AuditEvent

logger = logging.getLogger(__name__)

_PARTITION_NAME_RE = re.compile(r"^audit_events_\d{4}_\d{2}$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

AUDIT_RETENTION_MONTHS = 60  # bookkeeping records are kept for five years


async def write_audit_log(
    db: AsyncSession,
    *,
    action: str,
    resource_type: str,
    resource_id: UUID | None = None,
    invoice_id: UUID | None = None,
    api_credential_id: UUID | None = None,
    details: dict | None = None,
    correlation_id: str | None = None,
) -> None:
    entry = AuditEvent(
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        invoice_id=invoice_id,
        api_credential_id=api_credential_id,
        details=details,
        correlation_id=correlation_id or request_id_var.get("") or None,
    )
    db.add(entry)


async def list_invoice_events(db: AsyncSession, invoice_id: UUID) -> list[dict]:
    result = await db.execute(
        select(AuditEvent)
        .where(AuditEvent.invoice_id == invoice_id)
        .order_by(AuditEvent.created_at)
    )
    return [
        {
            "action": event.action,
            "details": event.details,
            "correlation_id": event.correlation_id,
            "created_at": event.created_at,
        }
        for event in result.scalars().all()
    ]


async def ensure_audit_partitions(db: AsyncSession) -> None:
    """Create partitions for current month + next 2 months.
    Drop partitions older than AUDIT_RETENTION_MONTHS.
    """
    now = datetime.now(timezone.utc)

    for i in range(3):
        month = now + relativedelta(months=i)
        next_month = month + relativedelta(months=1)
        partition_name = f"audit_events_{month.year}_{month.month:02d}"
        start = f"{month.year}-{month.month:02d}-01"
        end = f"{next_month.year}-{next_month.month:02d}-01"

        if not _PARTITION_NAME_RE.match(partition_name):
            logger.error("Invalid partition name: %s", partition_name)
            continue
        if not _DATE_RE.match(start) or not _DATE_RE.match(end):
            logger.error("Invalid date format: start=%s end=%s", start, end)
            continue

        result = await db.execute(
            text("SELECT 1 FROM pg_tables WHERE tablename = :name"),
            {"name": partition_name},
        )
        if result.scalar() is None:
            # partition_name and dates are validated by regex above
            await db.execute(text(
                f"CREATE TABLE {partition_name} PARTITION OF audit_events "
                f"FOR VALUES FROM ('{start}') TO ('{end}')"
            ))
            logger.info("Created audit partition: %s", partition_name)

    for month_offset in range(AUDIT_RETENTION_MONTHS + 1, AUDIT_RETENTION_MONTHS + 13):
        old_month = now - relativedelta(months=month_offset)
        partition_name = f"audit_events_{old_month.year}_{old_month.month:02d}"

        if not _PARTITION_NAME_RE.match(partition_name):
            logger.error("Invalid partition name: %s", partition_name)
            continue

        result = await db.execute(
            text("SELECT 1 FROM pg_tables WHERE tablename = :name"),
            {"name": partition_name},
        )
        if result.scalar() is not None:
            await db.execute(text(f"DROP TABLE {partition_name}"))
            logger.info("Dropped old audit partition: %s", partition_name)

    await db.commit()
