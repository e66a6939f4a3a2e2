from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import Field

from src.models.dto.common import ApiModel, Money


class PaymentCreate(ApiModel):
    invoice_id: UUID
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    method: Literal["BANK_TRANSFER", "VIPPS", "CARD", "CASH", "OTHER"]
    provider_ref: str | None = Field(default=None, max_length=255)
    paid_at: datetime | None = None


class PaymentResponse(ApiModel):
    id: UUID
    invoice_id: UUID
    amount: Money
    method: str
    provider: str | None = None
    provider_ref: str | None = None
    status: str
    paid_at: datetime | None = None
    invoice_status: str | None = None
    paid_amount: Money | None = None
    remaining_amount: Money | None = None
