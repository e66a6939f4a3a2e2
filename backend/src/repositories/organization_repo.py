from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.orm.organization import Organization


async def get_by_id(db: AsyncSession, organization_id: UUID) -> Organization | None:
    result = await db.execute(select(Organization).where(Organization.id == organization_id))
    return result.scalar_one_or_none()


async def get_default(db: AsyncSession, org_number: str | None = None) -> Organization | None:
    conditions = [Organization.is_default.is_(True)]
    if org_number:
        conditions.append(Organization.org_number == org_number)
    result = await db.execute(
        select(Organization)
        .where(or_(*conditions))
        .order_by(Organization.is_default.desc(), Organization.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()
