from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.orm.api_credential import ApiCredential


async def get_by_id(db: AsyncSession, credential_id: UUID) -> ApiCredential | None:
    result = await db.execute(select(ApiCredential).where(ApiCredential.id == credential_id))
    return result.scalar_one_or_none()


async def get_active_by_key_hash(db: AsyncSession, key_hash: str) -> ApiCredential | None:
    result = await db.execute(
        select(ApiCredential).where(
            ApiCredential.key_hash == key_hash,
            ApiCredential.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def touch_last_used(db: AsyncSession, credential_id: UUID) -> None:
    await db.execute(
        update(ApiCredential)
        .where(ApiCredential.id == credential_id)
        .values(last_used_at=datetime.now(timezone.utc))
    )
