from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies.api_key import require_signed_request
from src.api.dependencies.database import get_db
from src.models.dto.webhook import WebhookRetryResponse
from src.models.orm.api_credential import ApiCredential
from src.services import webhook_service

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/retry", response_model=WebhookRetryResponse)
async def retry_failed_webhooks(
    _: ApiCredential = Depends(require_signed_request),
    db: AsyncSession = Depends(get_db),
):
    return await webhook_service.retry_failed_webhooks(db)
