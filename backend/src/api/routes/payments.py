from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies.api_key import require_api_key, require_signed_request
from src.api.dependencies.database import get_db
from src.models.dto.payment import PaymentCreate, PaymentResponse
from src.models.orm.api_credential import ApiCredential
from src.services import payment_service
from src.services.webhook_service import flush_outbox

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("", response_model=PaymentResponse, status_code=201)
async def register_payment(
    body: PaymentCreate,
    _: ApiCredential = Depends(require_signed_request),
    db: AsyncSession = Depends(get_db),
):
    result = await payment_service.register_payment(
        db,
        invoice_id=body.invoice_id,
        amount=body.amount,
        method=body.method,
        provider_ref=body.provider_ref,
        paid_at=body.paid_at,
    )
    await flush_outbox(db)
    return result


@router.get("/{invoice_id}", response_model=list[PaymentResponse])
async def list_payments(
    invoice_id: UUID,
    _: ApiCredential = Depends(require_api_key),
    db: AsyncSession = Depends(get_db),
):
    return await payment_service.list_payments(db, invoice_id)
