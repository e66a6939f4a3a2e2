from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.orm.payment import Payment


async def get_completed_total(db: AsyncSession, invoice_id: UUID) -> Decimal:
    result = await db.execute(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.invoice_id == invoice_id,
            Payment.status == "COMPLETED",
        )
    )
    return Decimal(result.scalar_one())


async def list_for_invoice(db: AsyncSession, invoice_id: UUID) -> list[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.invoice_id == invoice_id)
        .order_by(Payment.created_at)
    )
    return list(result.scalars().all())
