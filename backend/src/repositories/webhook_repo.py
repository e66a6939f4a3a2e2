from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.orm.webhook import OutgoingWebhook, WebhookEndpoint


async def find_endpoint(db: AsyncSession, source: str, event: str) -> WebhookEndpoint | None:
    result = await db.execute(
        select(WebhookEndpoint)
        .where(
            WebhookEndpoint.source == source,
            WebhookEndpoint.is_active.is_(True),
            WebhookEndpoint.events.any(event),
        )
        .order_by(WebhookEndpoint.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_endpoint(db: AsyncSession, endpoint_id: UUID) -> WebhookEndpoint | None:
    result = await db.execute(select(WebhookEndpoint).where(WebhookEndpoint.id == endpoint_id))
    return result.scalar_one_or_none()


async def get_by_id(db: AsyncSession, webhook_id: UUID) -> OutgoingWebhook | None:
    result = await db.execute(select(OutgoingWebhook).where(OutgoingWebhook.id == webhook_id))
    return result.scalar_one_or_none()


async def get_retry_candidates(
    db: AsyncSession, *, limit: int, stale_before: datetime
) -> list[OutgoingWebhook]:
    """FAILED rows plus PENDING/RETRYING rows abandoned by a crashed delivery."""
    result = await db.execute(
        select(OutgoingWebhook)
        .where(
            or_(
                OutgoingWebhook.status == "FAILED",
                and_(
                    OutgoingWebhook.status.in_(("PENDING", "RETRYING")),
                    OutgoingWebhook.updated_at < stale_before,
                ),
            )
        )
        .order_by(OutgoingWebhook.updated_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    return list(result.scalars().all())
