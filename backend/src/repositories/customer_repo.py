from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.orm.customer import Customer, customer_number_seq


async def get_by_email(db: AsyncSession, email: str) -> Customer | None:
    result = await db.execute(
        select(Customer).where(func.lower(Customer.email) == email.lower())
    )
    return result.scalar_one_or_none()


async def next_customer_number(db: AsyncSession) -> int:
    """Draw the next customer number; numbers are never handed out twice."""
    result = await db.execute(select(customer_number_seq.next_value()))
    return int(result.scalar_one())
