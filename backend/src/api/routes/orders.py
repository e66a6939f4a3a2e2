from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies.api_key import require_api_key, require_signed_request
from src.api.dependencies.database import get_db
from src.models.dto.order import (
    CancelOrderRequest,
    CancelOrderResponse,
    InvoiceDetailResponse,
    OrderListResponse,
    OrderReceiveResponse,
    OrderStatusResponse,
    ReceiveOrderRequest,
    SendInvoiceResponse,
    UpdateOrderRequest,
)
from src.models.orm.api_credential import ApiCredential
from src.services import order_service
from src.services.webhook_service import flush_outbox

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/receive", response_model=OrderReceiveResponse, status_code=201)
async def receive_order(
    body: ReceiveOrderRequest,
    credential: ApiCredential = Depends(require_signed_request),
    db: AsyncSession = Depends(get_db),
):
    result = await order_service.receive_order(db, body, credential=credential)
    await flush_outbox(db)
    return result


@router.get("/status/{source_order_id}", response_model=OrderStatusResponse)
async def get_order_status(
    source_order_id: str,
    source: str | None = Query(None, max_length=255),
    _: ApiCredential = Depends(require_api_key),
    db: AsyncSession = Depends(get_db),
):
    return await order_service.get_order_status(db, source_order_id, source)


@router.get("/list", response_model=OrderListResponse)
async def list_orders(
    source: str | None = Query(None, max_length=255),
    status: str | None = Query(None, max_length=20),
    date_from: datetime | None = Query(None, alias="from"),
    date_to: datetime | None = Query(None, alias="to"),
    limit: int = Query(order_service.DEFAULT_LIST_LIMIT, ge=1, le=order_service.MAX_LIST_LIMIT),
    _: ApiCredential = Depends(require_api_key),
    db: AsyncSession = Depends(get_db),
):
    return await order_service.list_orders(
        db,
        source=source,
        status=status.upper() if status else None,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
    )


@router.get("/invoice/{source_order_id}", response_model=InvoiceDetailResponse)
async def get_invoice_details(
    source_order_id: str,
    source: str | None = Query(None, max_length=255),
    _: ApiCredential = Depends(require_api_key),
    db: AsyncSession = Depends(get_db),
):
    return await order_service.get_invoice_details(db, source_order_id, source)


@router.post("/cancel/{source_order_id}", response_model=CancelOrderResponse)
async def cancel_order(
    source_order_id: str,
    body: CancelOrderRequest | None = None,
    source: str | None = Query(None, max_length=255),
    _: ApiCredential = Depends(require_signed_request),
    db: AsyncSession = Depends(get_db),
):
    reason = body.reason if body else None
    result = await order_service.cancel_order(db, source_order_id, reason, source)
    await flush_outbox(db)
    return result


@router.post("/update/{source_order_id}", response_model=OrderStatusResponse)
async def update_order(
    source_order_id: str,
    body: UpdateOrderRequest,
    source: str | None = Query(None, max_length=255),
    _: ApiCredential = Depends(require_signed_request),
    db: AsyncSession = Depends(get_db),
):
    result = await order_service.update_order(db, source_order_id, body, source)
    await flush_outbox(db)
    return result


@router.post("/send/{source_order_id}", response_model=SendInvoiceResponse)
async def send_invoice(
    source_order_id: str,
    source: str | None = Query(None, max_length=255),
    _: ApiCredential = Depends(require_signed_request),
    db: AsyncSession = Depends(get_db),
):
    result = await order_service.send_order_invoice(db, source_order_id, source)
    await flush_outbox(db)
    return result
