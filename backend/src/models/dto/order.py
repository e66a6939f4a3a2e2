from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import EmailStr, Field, field_validator

from src.core.validators import validate_currency, validate_http_url, validate_org_number
from src.models.dto.common import ApiModel, Money

PaymentMethod = Literal["BANK_TRANSFER", "VIPPS", "CARD"]


def _date_part(v: Any) -> Any:
    # Accept full ISO timestamps for date fields
    if isinstance(v, str) and "T" in v:
        return v.split("T", 1)[0]
    return v


class OrderCustomer(ApiModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr = Field(max_length=320)
    phone: str | None = Field(default=None, max_length=50)
    org_number: str | None = None
    address: str | None = Field(default=None, max_length=255)
    postal_code: str | None = Field(default=None, max_length=20)
    city: str | None = Field(default=None, max_length=100)
    country: str | None = Field(default=None, min_length=2, max_length=2)

    @field_validator("org_number")
    @classmethod
    def check_org_number(cls, v: str | None) -> str | None:
        return validate_org_number(v)


class OrderCustomerUpdate(ApiModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    phone: str | None = Field(default=None, max_length=50)
    org_number: str | None = None
    address: str | None = Field(default=None, max_length=255)
    postal_code: str | None = Field(default=None, max_length=20)
    city: str | None = Field(default=None, max_length=100)
    country: str | None = Field(default=None, min_length=2, max_length=2)

    @field_validator("org_number")
    @classmethod
    def check_org_number(cls, v: str | None) -> str | None:
        return validate_org_number(v)


class OrderLine(ApiModel):
    description: str = Field(min_length=1, max_length=2000)
    quantity: Decimal = Field(ge=Decimal("0.001"), max_digits=12, decimal_places=3)
    unit_price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    vat_rate: Decimal | None = Field(default=None, ge=0, le=1, max_digits=5, decimal_places=4)
    product_code: str | None = Field(default=None, max_length=100)
    unit: str | None = Field(default=None, max_length=20)


class OrderAttachment(ApiModel):
    file_name: str = Field(min_length=1, max_length=255)
    file_url: str = Field(max_length=2048)
    mime_type: str | None = Field(default=None, max_length=100)

    @field_validator("file_url")
    @classmethod
    def validate_file_url(cls, v: str) -> str:
        return validate_http_url(v)


class ReceiveOrderRequest(ApiModel):
    source: str = Field(min_length=1, max_length=255)
    source_order_id: str = Field(min_length=1, max_length=255)
    customer: OrderCustomer
    lines: list[OrderLine] = Field(min_length=1)
    organization_id: UUID | None = None
    issue_date: date | None = None
    due_days: int | None = Field(default=None, ge=0, le=365)
    currency: str | None = None
    notes: str | None = Field(default=None, max_length=5000)
    callback_url: str | None = Field(default=None, max_length=2048)
    attachments: list[OrderAttachment] | None = None
    auto_send: bool = False
    preferred_payment_method: PaymentMethod | None = None
    internal_reference: str | None = Field(default=None, max_length=255)
    metadata: dict[str, Any] | None = None

    @field_validator("issue_date", mode="before")
    @classmethod
    def accept_timestamp(cls, v: Any) -> Any:
        return _date_part(v)

    @field_validator("currency")
    @classmethod
    def check_currency(cls, v: str | None) -> str | None:
        return validate_currency(v)

    @field_validator("callback_url")
    @classmethod
    def check_callback_url(cls, v: str | None) -> str | None:
        return validate_http_url(v)


class UpdateOrderRequest(ApiModel):
    customer: OrderCustomerUpdate | None = None
    lines: list[OrderLine] | None = Field(default=None, min_length=1)
    issue_date: date | None = None
    due_days: int | None = Field(default=None, ge=0, le=365)
    currency: str | None = None
    notes: str | None = Field(default=None, max_length=5000)
    callback_url: str | None = Field(default=None, max_length=2048)
    attachments: list[OrderAttachment] | None = None
    internal_reference: str | None = Field(default=None, max_length=255)
    metadata: dict[str, Any] | None = None

    @field_validator("issue_date", mode="before")
    @classmethod
    def accept_timestamp(cls, v: Any) -> Any:
        return _date_part(v)

    @field_validator("currency")
    @classmethod
    def check_currency(cls, v: str | None) -> str | None:
        return validate_currency(v)

    @field_validator("callback_url")
    @classmethod
    def check_callback_url(cls, v: str | None) -> str | None:
        return validate_http_url(v)


class CancelOrderRequest(ApiModel):
    reason: str | None = Field(default=None, max_length=1000)


class OrderReceiveResponse(ApiModel):
    success: bool = True
    invoice_id: UUID
    invoice_number: str
    status: str
    total_amount: Money
    vat_amount: Money
    due_date: date
    kid: str | None = None
    message: str | None = None


class PaymentSummary(ApiModel):
    id: UUID
    amount: Money
    method: str
    status: str
    paid_at: datetime | None = None


class OrderStatusResponse(ApiModel):
    source_order_id: str | None = None
    invoice_id: UUID
    invoice_number: str
    status: str
    total_amount: Money
    vat_amount: Money
    paid_amount: Money
    remaining_amount: Money
    due_date: date
    kid: str | None = None
    created_at: datetime
    sent_at: datetime | None = None
    paid_at: datetime | None = None
    payments: list[PaymentSummary] = []


class OrderListItem(ApiModel):
    source: str | None = None
    source_order_id: str | None = None
    invoice_id: UUID
    invoice_number: str
    status: str
    total_amount: Money
    currency: str
    customer_name: str | None = None
    due_date: date
    created_at: datetime


class OrderListResponse(ApiModel):
    orders: list[OrderListItem]
    count: int


class InvoiceLineResponse(ApiModel):
    position: int
    description: str
    quantity: Decimal
    unit_price: Money
    vat_rate: Decimal
    amount: Money
    vat_amount: Money
    product_code: str | None = None
    unit: str | None = None


class AttachmentResponse(ApiModel):
    file_name: str
    file_url: str
    mime_type: str | None = None


class CustomerSummary(ApiModel):
    id: UUID
    customer_number: int
    name: str
    email: str
    phone: str | None = None
    org_number: str | None = None
    address: str | None = None
    postal_code: str | None = None
    city: str | None = None
    country: str | None = None


class OrganizationSummary(ApiModel):
    id: UUID
    name: str
    org_number: str


class EmailLogResponse(ApiModel):
    recipient: str
    subject: str
    status: str
    message_id: str | None = None
    error: str | None = None
    created_at: datetime


class AuditEventResponse(ApiModel):
    action: str
    details: dict | None = None
    correlation_id: str | None = None
    created_at: datetime


class InvoiceDetailResponse(OrderStatusResponse):
    source: str | None = None
    currency: str
    subtotal: Money
    issue_date: date
    notes: str | None = None
    callback_url: str | None = None
    internal_reference: str | None = None
    preferred_payment_method: str | None = None
    metadata: dict[str, Any] | None = None
    pdf_url: str | None = None
    credit_note_id: UUID | None = None
    customer: CustomerSummary
    organization: OrganizationSummary
    lines: list[InvoiceLineResponse] = []
    attachments: list[AttachmentResponse] = []
    email_logs: list[EmailLogResponse] = []
    events: list[AuditEventResponse] = []


class CancelOrderResponse(ApiModel):
    success: bool = True
    action: Literal["deleted", "credited"]
    invoice_number: str
    credit_note_id: UUID | None = None
    credit_note_number: str | None = None
    message: str


class SendInvoiceResponse(ApiModel):
    success: bool = True
    invoice_id: UUID
    invoice_number: str
    status: str
    sent_at: datetime | None = None
    message: str
