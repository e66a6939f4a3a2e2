from datetime import date, datetime
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.models.orm.email_log import EmailLog
from src.models.orm.invoice import Invoice

_DETAIL_OPTIONS = (
    selectinload(Invoice.customer),
    selectinload(Invoice.organization),
    selectinload(Invoice.lines),
    selectinload(Invoice.attachments),
)


async def get_by_id(
    db: AsyncSession, invoice_id: UUID, *, for_update: bool = False
) -> Invoice | None:
    stmt = select(Invoice).where(Invoice.id == invoice_id).options(*_DETAIL_OPTIONS)
    if for_update:
        stmt = stmt.with_for_update(of=Invoice)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_by_source_order(
    db: AsyncSession,
    source_order_id: str,
    source: str | None = None,
    *,
    for_update: bool = False,
) -> Invoice | None:
    """Find the invoice created for an external order.

    Without a source the most recent match wins, since order ids are only
    unique per source system.
    """
    stmt = (
        select(Invoice)
        .where(Invoice.source_order_id == source_order_id)
        .options(*_DETAIL_OPTIONS)
        .order_by(Invoice.created_at.desc())
        .limit(1)
    )
    if source:
        stmt = stmt.where(Invoice.source == source)
    if for_update:
        stmt = stmt.with_for_update(of=Invoice)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def list_invoices(
    db: AsyncSession,
    *,
    source: str | None = None,
    status: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 50,
) -> list[Invoice]:
    stmt = select(Invoice).options(selectinload(Invoice.customer))
    if source:
        stmt = stmt.where(Invoice.source == source)
    if status:
        stmt = stmt.where(Invoice.status == status)
    if date_from:
        stmt = stmt.where(Invoice.created_at >= date_from)
    if date_to:
        stmt = stmt.where(Invoice.created_at <= date_to)
    stmt = stmt.order_by(Invoice.created_at.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_overdue_candidates(db: AsyncSession, today: date) -> list[Invoice]:
    result = await db.execute(
        select(Invoice)
        .where(
            Invoice.status.in_(("SENT", "PARTIALLY_PAID")),
            Invoice.due_date < today,
        )
        .options(*_DETAIL_OPTIONS)
        .with_for_update(of=Invoice, skip_locked=True)
    )
    return list(result.scalars().all())


async def get_reminder_candidates(
    db: AsyncSession, *, reminded_before: datetime, max_count: int
) -> list[UUID]:
    """OVERDUE invoices due another reminder, oldest due date first."""
    result = await db.execute(
        select(Invoice.id)
        .where(
            Invoice.status == "OVERDUE",
            Invoice.reminder_count < max_count,
            or_(
                Invoice.last_reminder_at.is_(None),
                Invoice.last_reminder_at < reminded_before,
            ),
        )
        .order_by(Invoice.due_date)
    )
    return list(result.scalars().all())


async def get_email_logs(db: AsyncSession, invoice_id: UUID) -> list[EmailLog]:
    result = await db.execute(
        select(EmailLog)
        .where(EmailLog.invoice_id == invoice_id)
        .order_by(EmailLog.created_at)
    )
    return list(result.scalars().all())
